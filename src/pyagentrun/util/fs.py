from __future__ import annotations
from pathlib import Path


class FsError(RuntimeError):
    pass


def resolve_path(cwd: Path, path_str: str) -> Path:
    """Resolve `path_str` against `cwd`; tools may not leave the working directory."""
    root = cwd.resolve()
    p = Path(path_str).expanduser()
    p = p.resolve() if p.is_absolute() else (root / p).resolve()
    if p != root and root not in p.parents:
        raise FsError(f"Path escapes working directory: {path_str}")
    return p


def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")
