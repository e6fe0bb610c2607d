"""
Filesystem helpers shared by the stores, the ACME issuer and the live
configuration tree.
"""

import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Union


def write_atomic(path: Path, data: Union[str, bytes], mode: int = 0o644) -> None:
    """
    Replace a file atomically: write a temp file in the same directory,
    then rename it over the target. Readers see the old or the new
    content, never a partial write.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, str):
        data = data.encode("utf-8")

    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def safe_relative_path(relative: str) -> PurePosixPath:
    """
    Validate a path relative to a configuration root.

    Raises:
        ValueError: Absolute paths or paths escaping the root
    """
    rel = PurePosixPath(relative)
    if not relative or rel.is_absolute() or ".." in rel.parts:
        raise ValueError(f"Invalid relative path: {relative!r}")
    return rel
