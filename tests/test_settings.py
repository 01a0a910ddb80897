import json

import pytest

from gemini_gui.config import AppConfig, AppPaths, resolve_root
from gemini_gui.models import DEFAULT_MODEL
from gemini_gui.settings import (
    DEFAULT_SETTINGS,
    SETTINGS_FILENAME,
    SettingsError,
    default_chat_settings,
    get_bool_setting,
    get_float_setting,
    get_int_setting,
    get_str_setting,
    import_settings,
    load_settings,
    resolve_api_key,
    resolve_proxy,
    save_settings,
    set_setting,
)


def test_load_settings_returns_defaults_when_missing(tmp_path):
    settings = load_settings(tmp_path)
    assert settings == DEFAULT_SETTINGS
    assert settings is not DEFAULT_SETTINGS


def test_load_settings_merges_over_defaults(tmp_path):
    (tmp_path / SETTINGS_FILENAME).write_text(
        json.dumps({"api": {"default_model": "gemini-2.5-pro"}, "ui": {"font_size": 16}}),
        encoding="utf-8",
    )
    settings = load_settings(tmp_path)
    assert settings["api"]["default_model"] == "gemini-2.5-pro"
    assert settings["api"]["use_streaming"] is True
    assert settings["ui"]["font_size"] == 16


def test_load_settings_ignores_broken_file(tmp_path):
    (tmp_path / SETTINGS_FILENAME).write_text("{not json", encoding="utf-8")
    assert load_settings(tmp_path) == DEFAULT_SETTINGS


def test_save_settings_writes_atomically(tmp_path):
    settings = load_settings(tmp_path)
    set_setting(settings, "api.api_key", "secret")
    path = save_settings(tmp_path, settings)
    assert path == tmp_path / SETTINGS_FILENAME
    assert not list(tmp_path.glob("*.tmp"))
    assert load_settings(tmp_path)["api"]["api_key"] == "secret"


def test_import_settings_rejects_invalid_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("[1, 2", encoding="utf-8")
    with pytest.raises(SettingsError):
        import_settings(path)


def test_import_settings_rejects_non_object(tmp_path):
    path = tmp_path / "list.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(SettingsError):
        import_settings(path)


def test_import_settings_missing_file(tmp_path):
    with pytest.raises(SettingsError):
        import_settings(tmp_path / "nope.json")


def test_typed_getters_fall_back_on_wrong_types():
    settings = {"a": {"flag": "yes", "count": True, "name": "  ", "size": "14"}}
    assert get_bool_setting(settings, "a.flag", False) is False
    assert get_int_setting(settings, "a.count", 3) == 3
    assert get_int_setting(settings, "a.size", 3) == 14
    assert get_str_setting(settings, "a.name", "fallback") == "fallback"
    assert get_str_setting(settings, "a.missing.deep", "x") == "x"


def test_set_setting_creates_intermediate_tables():
    settings = {"api": "not a table"}
    set_setting(settings, "api.api_key", "k")
    assert settings == {"api": {"api_key": "k"}}


def test_resolve_api_key_prefers_stored_key(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "from-env")
    assert resolve_api_key({"api": {"api_key": "stored"}}) == "stored"
    assert resolve_api_key({"api": {"api_key": ""}}) == "from-env"


def test_resolve_api_key_empty(no_env_api_key):
    assert resolve_api_key(DEFAULT_SETTINGS) == ""


def test_default_chat_settings_clamps_values():
    settings = {
        "api": {"default_model": "gemini-2.5-pro"},
        "chat": {"temperature": 9, "top_p": -1, "top_k": 0, "system_prompt": 42},
    }
    chat = default_chat_settings(settings)
    assert chat.model == "gemini-2.5-pro"
    assert chat.temperature == 2.0
    assert chat.top_p == 0.0
    assert chat.top_k == 40
    assert chat.system_prompt == ""


def test_default_chat_settings_uses_default_model_for_empty_settings():
    assert default_chat_settings({}).model == DEFAULT_MODEL


def test_resolve_root_honours_environment(app_root):
    assert resolve_root() == app_root.resolve()


def test_app_config_creates_directories(tmp_path):
    config = AppConfig(tmp_path / "data")
    assert config.paths == AppPaths.from_root((tmp_path / "data").resolve())
    assert config.paths.history_dir.is_dir()
    assert config.max_conversations == 100

    set_setting(config.settings, "history.max_conversations", 0)
    assert config.max_conversations == 1

    set_setting(config.settings, "ui.font_size", 20)
    config.save_settings()
    assert load_settings(config.paths.root)["ui"]["font_size"] == 20


def test_infinite_numbers_fall_back_to_defaults(tmp_path):
    (tmp_path / SETTINGS_FILENAME).write_text(
        '{"chat": {"top_k": Infinity, "temperature": NaN, "top_p": 1e999}, "ui": {"font_size": 1e999}}',
        encoding="utf-8",
    )
    settings = load_settings(tmp_path)
    assert get_int_setting(settings, "chat.top_k", 40) == 40
    assert get_float_setting(settings, "chat.temperature", 1.0) == 1.0
    chat = default_chat_settings(settings)
    assert (chat.top_k, chat.temperature, chat.top_p) == (40, 1.0, 0.95)
    assert get_int_setting(settings, "ui.font_size", 12) == 12


def test_resolve_proxy():
    assert resolve_proxy(DEFAULT_SETTINGS) is None
    assert resolve_proxy({"api": {"proxy": " socks5://localhost:1080 "}}) == "socks5://localhost:1080"
