from __future__ import annotations

import json
import logging
import math
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Mapping, MutableMapping

from .models import DEFAULT_MODEL, ChatSettings

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "gemini_gui_settings.json"
API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY")

DEFAULT_SETTINGS: dict[str, Any] = {
    "api": {
        "api_key": "",
        "default_model": DEFAULT_MODEL,
        "use_streaming": True,
        "include_thoughts_in_history": False,
        "inherit_chat_model": True,
        "proxy": "",
    },
    "chat": {
        "temperature": 1.0,
        "top_p": 0.95,
        "top_k": 40,
        "system_prompt": "",
        "thinking_enabled": True,
    },
    "history": {
        "max_conversations": 100,
    },
    "ui": {
        "font_size": 12,
    },
}


class SettingsError(Exception):
    """Raised when a settings file cannot be read or parsed."""


def settings_path(root: Path) -> Path:
    return root / SETTINGS_FILENAME


def load_settings(root: Path) -> dict[str, Any]:
    path = settings_path(root)
    if not path.exists():
        return deepcopy(DEFAULT_SETTINGS)

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return deepcopy(DEFAULT_SETTINGS)

    if not isinstance(payload, Mapping):
        return deepcopy(DEFAULT_SETTINGS)
    return _deep_merge(DEFAULT_SETTINGS, payload)


def save_settings(root: Path, settings: Mapping[str, Any]) -> Path:
    path = settings_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(settings, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)
    logger.debug("Settings saved to %s", path)
    return path


def import_settings(path: Path) -> dict[str, Any]:
    """Read a settings file picked by the user and merge it over the defaults."""

    logger.info("Reading settings from %s", path)
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise SettingsError(f"Failed to open {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise SettingsError(f"{path} is not valid JSON: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise SettingsError(f"{path} does not contain a settings object.")
    return _deep_merge(DEFAULT_SETTINGS, payload)


def get_setting(settings: Mapping[str, Any], dotted_key: str, default: Any = None) -> Any:
    current: Any = settings
    for part in dotted_key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def set_setting(settings: MutableMapping[str, Any], dotted_key: str, value: Any) -> None:
    parts = dotted_key.split(".")
    current: MutableMapping[str, Any] = settings
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, MutableMapping):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def get_bool_setting(settings: Mapping[str, Any], dotted_key: str, default: bool) -> bool:
    value = get_setting(settings, dotted_key, default)
    return value if isinstance(value, bool) else default


def get_int_setting(settings: Mapping[str, Any], dotted_key: str, default: int | None) -> int | None:
    value = get_setting(settings, dotted_key, default)
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def get_float_setting(settings: Mapping[str, Any], dotted_key: str, default: float) -> float:
    value = get_setting(settings, dotted_key, default)
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if math.isfinite(number) else default


def get_str_setting(settings: Mapping[str, Any], dotted_key: str, default: str) -> str:
    value = get_setting(settings, dotted_key, default)
    if not isinstance(value, str) or not value.strip():
        return default
    return value


def resolve_api_key(settings: Mapping[str, Any]) -> str:
    stored = get_str_setting(settings, "api.api_key", "").strip()
    if stored:
        return stored
    for env_var in API_KEY_ENV_VARS:
        value = os.getenv(env_var, "").strip()
        if value:
            return value
    return ""


def resolve_proxy(settings: Mapping[str, Any]) -> str | None:
    return get_str_setting(settings, "api.proxy", "").strip() or None


def default_chat_settings(settings: Mapping[str, Any]) -> ChatSettings:
    system_prompt = get_setting(settings, "chat.system_prompt", "")
    return ChatSettings(
        model=get_str_setting(settings, "api.default_model", DEFAULT_MODEL),
        temperature=get_float_setting(settings, "chat.temperature", 1.0),
        top_p=get_float_setting(settings, "chat.top_p", 0.95),
        top_k=get_int_setting(settings, "chat.top_k", 40) or 40,
        system_prompt=system_prompt if isinstance(system_prompt, str) else "",
        thinking_enabled=get_bool_setting(settings, "chat.thinking_enabled", True),
    ).normalized()


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged
