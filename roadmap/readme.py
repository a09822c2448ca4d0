from __future__ import annotations

import enum
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from roadmap.config import DEFAULT_END_MARKER, DEFAULT_START_MARKER
from roadmap.errors import MarkerStructureError

logger = logging.getLogger(__name__)


class PatchState(enum.Enum):
    SEARCH = "search"
    FOUND_START = "found-start"
    REPLACE = "replace"
    APPEND = "append"
    DONE = "done"


def _region(body: str) -> str:
    stripped = body.strip("\n")
    return f"\n{stripped}\n"


def patch_document(
    text: str,
    body: str,
    start_marker: str = DEFAULT_START_MARKER,
    end_marker: str = DEFAULT_END_MARKER,
) -> str:
    """Return ``text`` with the region between the markers replaced by ``body``.

    Markers are kept verbatim. Without a start marker a new marker block is
    appended at the end of the text; a start marker without a matching end
    marker raises :class:`MarkerStructureError`, as does a ``body`` that
    contains either marker.
    """
    for marker in (start_marker, end_marker):
        if marker in body:
            raise MarkerStructureError(
                f"Generated content contains the marker '{marker}'; "
                "the next run could not find the block boundaries"
            )

    state = PatchState.SEARCH
    start_index = end_index = -1
    result = text

    while state is not PatchState.DONE:
        if state is PatchState.SEARCH:
            start_index = text.find(start_marker)
            state = PatchState.APPEND if start_index == -1 else PatchState.FOUND_START

        elif state is PatchState.FOUND_START:
            end_index = text.find(end_marker, start_index + len(start_marker))
            if end_index == -1:
                raise MarkerStructureError(
                    f"Found '{start_marker}' but no '{end_marker}' after it; "
                    "refusing to guess where the generated block ends"
                )
            state = PatchState.REPLACE

        elif state is PatchState.REPLACE:
            prefix = text[: start_index + len(start_marker)]
            suffix = text[end_index:]
            result = prefix + _region(body) + suffix
            state = PatchState.DONE

        elif state is PatchState.APPEND:
            separator = "" if not text or text.endswith("\n") else "\n"
            result = f"{text}{separator}{start_marker}{_region(body)}{end_marker}\n"
            logger.info("roadmap.patch.append")
            state = PatchState.DONE

    return result


def write_atomically(path: Path, text: str) -> None:
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            os.chmod(tmp_name, path.stat().st_mode & 0o777)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def create_backup(path: Path) -> Path | None:
    path = Path(path)
    if not path.exists():
        return None
    stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    backup = path.with_name(f"{path.name}.backup.{stamp}")
    backup.write_bytes(path.read_bytes())
    logger.info("roadmap.patch.backup", extra={"path": str(backup)})
    return backup


def _read_text(path: Path) -> str:
    if not path.exists():
        logger.warning("roadmap.patch.missing_document", extra={"path": str(path)})
        return ""
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


def update_document(
    path: Path,
    body: str,
    start_marker: str = DEFAULT_START_MARKER,
    end_marker: str = DEFAULT_END_MARKER,
    *,
    backup: bool = False,
) -> bool:
    path = Path(path)
    current = _read_text(path)
    updated = patch_document(current, body, start_marker, end_marker)

    if updated == current and path.exists():
        logger.info("roadmap.patch.unchanged", extra={"path": str(path)})
        return False

    if backup:
        create_backup(path)
    write_atomically(path, updated)

    written = _read_text(path)
    if start_marker not in written or end_marker not in written:
        raise MarkerStructureError(f"Markers missing from {path} after update")

    logger.info("roadmap.patch.written", extra={"path": str(path)})
    return True
