import json

from mailmirror.infra import config_store


def _point_config_at(tmp_path, monkeypatch, content=None):
    config_dir = tmp_path / "mail_config"
    config_dir.mkdir()
    config_file = config_dir / "config.json"
    if content is not None:
        config_file.write_text(content, encoding="utf-8")
    monkeypatch.setattr(config_store, "CONFIG_DIR", str(config_dir))
    monkeypatch.setattr(config_store, "CONFIG_FILE", str(config_file))
    return config_file


def test_config_load_invalid_json_sets_error(tmp_path, monkeypatch):
    _point_config_at(tmp_path, monkeypatch, "{invalid")

    cfg = config_store.Config()

    assert cfg.load_error
    assert cfg.get("steady_refresh_interval_sec") == 30.0


def test_config_load_non_object_sets_error(tmp_path, monkeypatch):
    _point_config_at(tmp_path, monkeypatch, '["not", "an", "object"]')

    cfg = config_store.Config()

    assert cfg.load_error == "Config payload must be a JSON object."


def test_config_merges_saved_values_and_saves(tmp_path, monkeypatch):
    config_file = _point_config_at(tmp_path, monkeypatch, '{"sort_order": "date"}')

    cfg = config_store.Config()
    cfg.set("recent_fetch_hours", 4)

    assert cfg.load_error is None
    assert cfg.get("sort_order") == "date"
    assert cfg.get("quick_refresh_count") == 3
    saved = json.loads(config_file.read_text(encoding="utf-8"))
    assert saved["recent_fetch_hours"] == 4


def test_refresh_settings_fall_back_on_bad_values():
    settings = config_store.RefreshSettings.from_config(
        {
            "quick_refresh_interval_sec": "fast",
            "quick_refresh_count": "2",
            "steady_refresh_interval_sec": -5,
            "min_refresh_spacing_sec": 1.5,
        }
    )

    assert settings.quick_interval == 5.0
    assert settings.quick_ticks == 2
    assert settings.steady_interval == 30.0
    assert settings.min_spacing == 1.5
