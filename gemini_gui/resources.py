from __future__ import annotations

import sys
from functools import lru_cache
from pathlib import Path

ICON_FILENAME = "icon.svg"


@lru_cache(maxsize=1)
def _package_root() -> Path:
    """Return the base directory for bundled/static resources."""

    base = getattr(sys, "_MEIPASS", None)
    if base:
        # PyInstaller で固めた場合は一時展開ディレクトリを指す
        return (Path(base) / "gemini_gui").resolve()
    return Path(__file__).resolve().parent


def resource_path(*relative_parts: str) -> Path:
    """Resolve a resource path that works for PyInstaller bundles as well."""

    if not relative_parts:
        return _package_root()
    return _package_root().joinpath(*relative_parts)


def icon_path() -> Path | None:
    path = resource_path("assets", ICON_FILENAME)
    return path if path.exists() else None
