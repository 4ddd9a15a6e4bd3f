from __future__ import annotations

import logging
from pathlib import Path
from typing import List, NoReturn, Optional

import typer

from .attendance_config import MatcherConfig
from .enrollment_db import EnrollmentDatabase, EnrollmentReport
from .errors import AttendanceError
from .face_embedder import ArcFaceEmbedder
from .face_localizer import HaarCascadeLocalizer, InsightFaceLocalizer
from .frame_source import CameraFrameSource, ImageFileFrameSource
from .roster import Roster
from .session import NO_FACE, PRESENT, RecognitionOutcome, AttendanceSession

app = typer.Typer(add_completion=False, help="Face recognition attendance.")

DEFAULT_DB_PATH = Path("profiles/enrollment_db.json")
EXPORT_FORMATS = ("csv", "xlsx")

_STATUS_COLORS = {
    PRESENT: typer.colors.GREEN,
    NO_FACE: typer.colors.YELLOW,
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _build_session(
    roster_path: Path,
    k: int,
    threshold: float,
    with_enroll_localizer: bool = False,
) -> AttendanceSession:
    roster = Roster.from_file(roster_path)
    # The accurate detector is only loaded when building the database.
    enroll_localizer = InsightFaceLocalizer() if with_enroll_localizer else None
    live_localizer = HaarCascadeLocalizer()
    return AttendanceSession(
        roster=roster,
        enroll_localizer=enroll_localizer or live_localizer,
        live_localizer=live_localizer,
        embedder=ArcFaceEmbedder(),
        config=MatcherConfig(k=k, threshold=threshold),
    )


def _load_database(session: AttendanceSession, db_path: Path) -> None:
    database = EnrollmentDatabase.load(db_path)
    if len(database) == 0:
        _fail(f"Enrollment database {db_path} is empty; run `enroll` first")
    session.load_database(database)
    typer.secho(
        f"Loaded {len(session.database)} records for "
        f"{len(session.database.identities())} identities (k={session.k})",
        fg=typer.colors.BLUE,
    )


def _open_session(
    roster_path: Path, db_path: Path, k: int, threshold: float, fmt: str
) -> AttendanceSession:
    # Checked up front: the export runs even after a failed capture loop.
    if fmt not in EXPORT_FORMATS:
        _fail(f"Unsupported format {fmt!r}; choose from {', '.join(EXPORT_FORMATS)}")
    try:
        session = _build_session(roster_path, k=k, threshold=threshold)
        _load_database(session, db_path)
    except (AttendanceError, FileNotFoundError) as exc:
        _fail(str(exc))
    return session


def _report_outcome(label: str, outcome: RecognitionOutcome) -> None:
    color = _STATUS_COLORS.get(outcome.status, typer.colors.YELLOW)
    fields = [label, f"status={outcome.status}"]
    if outcome.decision is not None:
        decision = outcome.decision
        fields.extend(
            [
                f"votes={decision.majority_count}/{decision.k}",
                f"mean_dist={decision.confidence_distance:.3f}",
                f"closest={decision.closest_distance:.3f}",
            ]
        )
    typer.secho(" ".join(fields), fg=typer.colors.CYAN)
    typer.secho(f"  {outcome.message}", fg=color)


def _report_enrollment(report: EnrollmentReport) -> None:
    for identity_id, source, reason in report.skipped:
        typer.secho(f"  skipped {source} ({identity_id}): {reason}", fg=typer.colors.YELLOW)
    typer.secho(
        f"Enrolled {report.enrolled}/{report.processed} images "
        f"({len(report.skipped)} skipped)",
        fg=typer.colors.GREEN,
    )


def _export(session: AttendanceSession, output_dir: Path, fmt: str) -> None:
    path = session.export(output_dir, fmt=fmt)
    summary = session.roster.summary()
    typer.secho(
        f"Attendance written to {path}: present={summary['present']} "
        f"absent={summary['absent']}",
        fg=typer.colors.GREEN,
    )


@app.command()
def enroll(
    roster_path: Path = typer.Argument(..., help="Roster CSV/XLSX with identity_id and display_name."),
    faces_dir: Path = typer.Argument(..., help="Directory with one sub-folder of images per identity."),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="Enrollment database path."),
    verbose: bool = typer.Option(False, "--verbose/--quiet", help="Log per-image details."),
) -> None:
    _configure_logging(verbose)
    try:
        session = _build_session(
            roster_path,
            k=MatcherConfig.k,
            threshold=MatcherConfig.threshold,
            with_enroll_localizer=True,
        )
        report = session.enroll_directory(faces_dir)
    except (AttendanceError, FileNotFoundError) as exc:
        _fail(f"Enrollment failed: {exc}")
    _report_enrollment(report)
    session.database.save(db_path)
    typer.secho(
        f"Database written to {db_path} ({len(session.database)} records)",
        fg=typer.colors.GREEN,
    )


@app.command()
def identify(
    roster_path: Path = typer.Argument(..., help="Roster CSV/XLSX."),
    images: List[Path] = typer.Argument(..., help="Query images."),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="Enrollment database path."),
    k: int = typer.Option(MatcherConfig.k, "--k", min=1, help="Neighbors consulted by the vote."),
    threshold: float = typer.Option(
        MatcherConfig.threshold, "--threshold", min=0.0, help="Maximum mean distance."
    ),
    output_dir: Path = typer.Option(Path("attendance"), "--output-dir", help="Attendance output directory."),
    fmt: str = typer.Option("csv", "--format", help="Attendance file format: csv or xlsx."),
    verbose: bool = typer.Option(False, "--verbose/--quiet", help="Log match details."),
) -> None:
    _configure_logging(verbose)
    session = _open_session(roster_path, db_path, k, threshold, fmt)
    source = ImageFileFrameSource(images)
    try:
        for image_path in images:
            try:
                frame = source.acquire_frame()
            except RuntimeError as exc:
                typer.secho(str(exc), fg=typer.colors.YELLOW)
                continue
            _report_outcome(str(image_path), session.recognize(frame))
    except AttendanceError as exc:
        _fail(str(exc))
    finally:
        _export(session, output_dir, fmt)


@app.command()
def capture(
    roster_path: Path = typer.Argument(..., help="Roster CSV/XLSX."),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="Enrollment database path."),
    camera: int = typer.Option(0, "--camera", help="Camera index."),
    frames: Optional[int] = typer.Option(None, "--frames", help="Stop after N captures."),
    k: int = typer.Option(MatcherConfig.k, "--k", min=1, help="Neighbors consulted by the vote."),
    threshold: float = typer.Option(
        MatcherConfig.threshold, "--threshold", min=0.0, help="Maximum mean distance."
    ),
    output_dir: Path = typer.Option(Path("attendance"), "--output-dir", help="Attendance output directory."),
    fmt: str = typer.Option("csv", "--format", help="Attendance file format: csv or xlsx."),
    verbose: bool = typer.Option(False, "--verbose/--quiet", help="Log match details."),
) -> None:
    _configure_logging(verbose)
    session = _open_session(roster_path, db_path, k, threshold, fmt)
    captured = 0
    try:
        with CameraFrameSource(camera) as source:
            while frames is None or captured < frames:
                reply = typer.prompt(
                    "Enter to capture, q to finish", default="", show_default=False
                )
                if reply.strip().lower() == "q":
                    break
                captured += 1
                _report_outcome(f"capture={captured}", session.recognize(source.acquire_frame()))
    except AttendanceError as exc:
        _fail(str(exc))
    except typer.Abort:
        raise
    except RuntimeError as exc:
        _fail(f"Camera error: {exc}")
    finally:
        _export(session, output_dir, fmt)


@app.command("roster")
def show_roster(
    roster_path: Path = typer.Argument(..., help="Roster CSV/XLSX."),
) -> None:
    try:
        roster = Roster.from_file(roster_path)
    except (AttendanceError, FileNotFoundError) as exc:
        _fail(str(exc))
    for entry in roster:
        typer.echo(f"{entry.identity_id}\t{entry.display_name}\t{entry.status.value}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
