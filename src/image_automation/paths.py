from __future__ import annotations

import os
from pathlib import Path

from .errors import ManifestPathError


def secure_join(root: Path, subpath: str) -> Path:
    """Join ``subpath`` onto ``root`` without leaving ``root``.

    ``..`` components and symlinks are resolved first; an empty subpath is the
    root itself. Raises ManifestPathError if the result lies outside ``root``.
    """
    root = Path(root).resolve()
    if not subpath:
        return root
    # Treat absolute paths as relative to the repository root
    candidate = (root / subpath.lstrip("/" + os.sep)).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        raise ManifestPathError(f"update path {subpath!r} is outside the repository root")
    return candidate
