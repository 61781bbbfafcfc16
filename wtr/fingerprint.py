from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable

from . import db


def dependency_fingerprint(workspace: str | Path, files: Iterable[str]) -> str | None:
    """sha256 over the names and contents of the dependency descriptors.

    Returns None if any listed file is missing, which callers treat as "changed".
    """
    root = Path(workspace)
    h = hashlib.sha256()
    for rel in sorted(set(files)):
        p = root / rel
        if not p.is_file():
            return None
        h.update(rel.encode("utf-8"))
        h.update(b"\0")
        h.update(p.read_bytes())
        h.update(b"\0")
    return h.hexdigest()


def needs_rebuild(project: str, digest: str | None) -> bool:
    if digest is None:
        return True
    row = db.get_fingerprint(project)
    return row is None or row.digest != digest


def record(project: str, workspace: str, digest: str | None) -> None:
    # An incomplete fingerprint is never stored, so the next start rebuilds again.
    if digest is None:
        db.clear_fingerprint(project)
    else:
        db.set_fingerprint(project, workspace, digest)
