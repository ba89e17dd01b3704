"""File-system helpers shared by every stage-pipeline component.

Task results, consolidations and manifests are all written through the
atomic writers: a crash leaves either the previous file or the new one.
"""

from __future__ import annotations

import json
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, IO

_SLUG_RE = re.compile(r"[^a-z0-9]")


def _atomic_write(path: Path | str, write: Callable[[IO[str]], None]) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(target.name + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as fh:
            write(fh)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path | str, data: Any) -> None:
    """Serialise *data* as indented JSON and move it into place at *path*.

    Parent directories are created. Values JSON cannot encode natively
    (enums, paths, datetimes) fall back to ``str``.
    """
    _atomic_write(path, lambda fh: json.dump(data, fh, indent=2, default=str))


def atomic_write_text(path: Path | str, text: str) -> None:
    """Text counterpart of :func:`atomic_write_json`."""
    _atomic_write(path, lambda fh: fh.write(text))


def load_json(path: Path | str) -> Any | None:
    """Return the parsed contents of *path*, or None when it is absent or unreadable."""
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


def ensure_dir(path: Path | str) -> Path:
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def slugify(text: str) -> str:
    """Lower-case *text* and replace every non-alphanumeric char with ``-``.

    Each character is replaced individually (no collapsing), so
    ``"User Login"`` becomes ``"user-login"`` and ``"A & B"`` becomes
    ``"a---b"``.
    """
    return _SLUG_RE.sub("-", text.lower())


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def today_utc() -> str:
    """Return the current UTC date as ``YYYY-MM-DD``."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def new_run_id(now: datetime | None = None) -> str:
    """Generate a sortable, unique run identifier.

    Format: ``RUN-YYYYMMDD-HHMMSS-XXXXXX``.
    """
    now = now or datetime.now(timezone.utc)
    suffix = uuid.uuid4().hex[:6].upper()
    return f"RUN-{now:%Y%m%d-%H%M%S}-{suffix}"
