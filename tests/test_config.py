"""Tests for configuration management."""

import json

from dedup_guard.utils.config import Config


def test_creates_file_with_defaults(tmp_path):
    config_file = tmp_path / "cfg" / "config.json"

    config = Config(config_file)

    assert config_file.exists()
    assert config.get("detection.similarity_threshold") == 0.92
    assert config.get("detection.minimum_confidence") == 0.90
    assert config.get("protected_folders") == []


def test_user_settings_merged_over_defaults(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"detection": {"similarity_threshold": 0.8}}))

    config = Config(config_file)

    assert config.get("detection.similarity_threshold") == 0.8
    assert config.get("detection.hash_size") == 8


def test_invalid_file_falls_back_to_defaults(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text("{not json")

    config = Config(config_file)

    assert config.get("safety.use_recycle_bin") is True


def test_set_persists(tmp_path):
    config_file = tmp_path / "config.json"
    Config(config_file).set("safety.backup_workers", 8)

    assert Config(config_file).get("safety.backup_workers") == 8


def test_get_missing_key_returns_default(config):
    assert config.get("nothing.here", "fallback") == "fallback"


def test_protected_folders(config, tmp_path):
    config.add_protected_folder("Family")
    config.add_protected_folder("Family")

    assert config.get("protected_folders") == ["Family"]
    assert config.is_path_protected(tmp_path / "family" / "a.jpg")
    assert not config.is_path_protected(tmp_path / "misc" / "a.jpg")

    config.remove_protected_folder("Family")
    assert not config.is_path_protected(tmp_path / "family" / "a.jpg")


def test_api_key_from_environment(config, monkeypatch):
    monkeypatch.setenv("GOOGLE_VISION_API_KEY", "from-env")
    assert config.get_api_key("google_vision") == "from-env"

    config.settings["providers"]["google_vision"]["api_key"] = "from-config"
    assert config.get_api_key("google_vision") == "from-config"


def test_state_paths_follow_config_dir(config):
    assert config.get_backup_dir() == config.config_file.parent / "backups"
    assert config.get_operations_log() == config.config_file.parent / "operations.log"
