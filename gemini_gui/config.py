from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .settings import get_int_setting, load_settings, save_settings, settings_path

HOME_ENV_VAR = "GEMINI_GUI_HOME"
LOG_LEVEL_ENV_VAR = "GEMINI_GUI_LOG_LEVEL"
DEFAULT_DIRNAME = ".gemini_gui"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


@dataclass(frozen=True)
class AppPaths:
    root: Path
    settings_path: Path
    history_dir: Path
    history_path: Path

    @classmethod
    def from_root(cls, root: Path) -> "AppPaths":
        history_dir = root / "history"
        return cls(
            root=root,
            settings_path=settings_path(root),
            history_dir=history_dir,
            history_path=history_dir / "conversations.json",
        )

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.history_dir.mkdir(parents=True, exist_ok=True)


def resolve_root(root: Path | str | None = None) -> Path:
    if root is not None:
        return Path(root).expanduser().resolve()
    override = os.getenv(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    return (Path.home() / DEFAULT_DIRNAME).resolve()


class AppConfig:
    """Resolved data directory plus the settings document loaded from it."""

    def __init__(self, root: Path | str | None = None) -> None:
        self.paths = AppPaths.from_root(resolve_root(root))
        self.paths.ensure()
        self.settings: dict[str, Any] = load_settings(self.paths.root)

    @property
    def max_conversations(self) -> int:
        value = get_int_setting(self.settings, "history.max_conversations", 100) or 100
        return max(1, value)

    def save_settings(self) -> Path:
        return save_settings(self.paths.root, self.settings)


def configure_logging(level: str | int | None = None) -> None:
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV_VAR, "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.strip().upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx はリクエスト毎に INFO を出すので抑制する
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
