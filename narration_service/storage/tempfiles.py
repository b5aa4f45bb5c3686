from __future__ import annotations

import logging
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

log = logging.getLogger(__name__)


@contextmanager
def temp_path(prefix: str, suffix: str = "", root: str | None = None) -> Iterator[Path]:
    """Yield a scratch file path that is removed on every exit path.

    The file lives inside a private directory created for this scope, so
    anything a tool writes next to it (``.part`` files, swapped extensions)
    is removed together with it.
    """
    workdir = Path(tempfile.mkdtemp(prefix=prefix, dir=root))
    try:
        yield workdir / f"{prefix.rstrip('-_') or 'resource'}{suffix}"
    finally:
        shutil.rmtree(workdir, ignore_errors=True)
        if workdir.exists():  # pragma: no cover - filesystem refused removal
            log.warning("temp scope cleanup incomplete", extra={"path": str(workdir)})
