from __future__ import annotations

import errno
import os
from pathlib import Path


def write_text_atomic(path: str | os.PathLike[str], text: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(text)
    try:
        tmp_path.replace(target)
    except OSError as exc:
        # Some bind-mounted single files in containers cannot be atomically replaced.
        if exc.errno != errno.EBUSY:
            raise
        with target.open("w", encoding="utf-8") as handle:
            handle.write(text)
        if tmp_path.exists():
            tmp_path.unlink()
