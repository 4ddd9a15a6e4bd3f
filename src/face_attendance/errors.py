from __future__ import annotations


class AttendanceError(Exception):
    """Base class for attendance pipeline errors."""


class NoFaceDetected(AttendanceError):
    pass


class EmptyDatabase(AttendanceError):
    pass


class InvalidArgument(AttendanceError, ValueError):
    pass


class ExtractorMismatch(InvalidArgument):
    pass


class UnknownIdentity(AttendanceError, LookupError):
    def __init__(self, identity_id: str) -> None:
        super().__init__(f"Identity {identity_id!r} is not on the roster")
        self.identity_id = identity_id


class RosterFormatError(AttendanceError, ValueError):
    pass


class DatabaseFormatError(AttendanceError, ValueError):
    pass
