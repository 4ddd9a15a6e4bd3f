from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

import pandas as pd

from .errors import RosterFormatError, UnknownIdentity
from .face_types import AttendanceStatus, IdentityEntry

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("identity_id", "display_name")
EXPORT_COLUMNS = ["identity_id", "display_name", "status", "marked_at"]


def _read_table(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path, dtype=str, keep_default_na=False)
    if suffix in (".xlsx", ".xls"):
        return pd.read_excel(path, dtype=str, keep_default_na=False)
    raise RosterFormatError(f"Unsupported roster format: {path.suffix}")


class Roster:
    """Identity list with per-session attendance status.

    Lookups are case-insensitive. Status only moves from Absent to Present.
    """

    def __init__(self, entries: Iterable[IdentityEntry] = ()) -> None:
        self._entries: Dict[str, IdentityEntry] = {}
        for entry in entries:
            key = entry.identity_id.casefold()
            if key in self._entries:
                raise RosterFormatError(f"Duplicate identity_id {entry.identity_id!r}")
            self._entries[key] = entry

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> "Roster":
        frame = frame.rename(columns=lambda col: str(col).strip().lower())
        missing = [col for col in REQUIRED_COLUMNS if col not in frame.columns]
        if missing:
            raise RosterFormatError(f"Roster is missing columns: {', '.join(missing)}")
        entries = []
        for row in frame.itertuples(index=False):
            identity_id = str(row.identity_id).strip()
            if not identity_id:
                continue
            display_name = str(row.display_name).strip() or identity_id
            entries.append(
                IdentityEntry(identity_id=identity_id, display_name=display_name)
            )
        return cls(entries)

    @classmethod
    def from_file(cls, path: Union[Path, str]) -> "Roster":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Roster file not found: {path}")
        roster = cls.from_frame(_read_table(path))
        logger.info("Loaded roster %s with %d identities", path, len(roster))
        return roster

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[IdentityEntry]:
        return iter(self._entries.values())

    def __contains__(self, identity_id: object) -> bool:
        return isinstance(identity_id, str) and identity_id.casefold() in self._entries

    def identity_ids(self) -> List[str]:
        return [entry.identity_id for entry in self._entries.values()]

    def get(self, identity_id: str) -> Optional[IdentityEntry]:
        return self._entries.get(identity_id.casefold())

    def mark_present(self, identity_id: str) -> str:
        """Mark ``identity_id`` present and return its display name.

        Marking an identity that is already present is a no-op.
        """
        entry = self.get(identity_id)
        if entry is None:
            raise UnknownIdentity(identity_id)
        if entry.status is not AttendanceStatus.PRESENT:
            entry.status = AttendanceStatus.PRESENT
            entry.marked_at = datetime.now()
            logger.info("Marked %s (%s) present", entry.identity_id, entry.display_name)
        return entry.display_name

    def present_ids(self) -> List[str]:
        return [
            entry.identity_id
            for entry in self._entries.values()
            if entry.status is AttendanceStatus.PRESENT
        ]

    def summary(self) -> Dict[str, int]:
        present = len(self.present_ids())
        return {"total": len(self), "present": present, "absent": len(self) - present}

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "identity_id": entry.identity_id,
                "display_name": entry.display_name,
                "status": entry.status.value,
                "marked_at": (
                    entry.marked_at.isoformat(timespec="seconds")
                    if entry.marked_at
                    else ""
                ),
            }
            for entry in self._entries.values()
        ]
        return pd.DataFrame(rows, columns=EXPORT_COLUMNS)

    def save(
        self,
        directory: Union[Path, str],
        stem: str = "attendance",
        fmt: str = "csv",
        now: Optional[datetime] = None,
    ) -> Path:
        """Write the roster to ``<stem>_<timestamp>.<fmt>`` without overwriting."""
        if fmt not in ("csv", "xlsx"):
            raise RosterFormatError(f"Unsupported export format: {fmt}")
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        path = directory / f"{stem}_{stamp}.{fmt}"
        counter = 1
        while path.exists():
            path = directory / f"{stem}_{stamp}_{counter}.{fmt}"
            counter += 1
        frame = self.to_frame()
        if fmt == "csv":
            frame.to_csv(path, index=False)
        else:
            frame.to_excel(path, index=False)
        logger.info("Attendance written to %s", path)
        return path
