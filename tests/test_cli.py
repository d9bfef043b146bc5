"""Tests for the command-line interface."""

import json
import shutil

import pytest
from click.testing import CliRunner
from PIL import Image

from dedup_guard.cli import cli
from dedup_guard.core.models import BackupKind
from dedup_guard.core.safety import SafetyManager
from dedup_guard.utils.config import Config


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "state" / "config.json"


@pytest.fixture
def library(tmp_path):
    root = tmp_path / "library"
    root.mkdir()
    Image.new("RGB", (300, 200), color=(90, 10, 160)).save(root / "original.png")
    shutil.copy(root / "original.png", root / "copy.png")
    Image.new("RGB", (60, 60), color=(250, 250, 0)).save(root / "unique.png")
    return root


def _invoke(runner, config_file, *args, **kwargs):
    return runner.invoke(cli, ["--config", str(config_file), *args], obj={}, **kwargs)


def test_protect_and_unprotect(runner, config_file):
    result = _invoke(runner, config_file, "protect", "--folder", "Family")
    assert result.exit_code == 0
    assert json.loads(config_file.read_text())["protected_folders"] == ["Family"]

    result = _invoke(runner, config_file, "unprotect", "--folder", "Family")
    assert result.exit_code == 0
    assert json.loads(config_file.read_text())["protected_folders"] == []


def test_scan_delete_restore_workflow(runner, config_file, library, tmp_path):
    report = tmp_path / "report.json"

    result = _invoke(
        runner, config_file, "scan", "--path", str(library), "--output", str(report), "--no-progress"
    )
    assert result.exit_code == 0, result.output
    groups = json.loads(report.read_text())["groups"]
    assert len(groups) == 1
    assert groups[0]["method"] == "exact"

    result = _invoke(
        runner,
        config_file,
        "delete",
        "--input",
        str(report),
        "--permanent",
        "--confirm",
        "--no-progress",
    )
    assert result.exit_code == 0, result.output
    remaining = sorted(p.name for p in library.iterdir())
    assert len(remaining) == 2
    assert "unique.png" in remaining

    result = _invoke(runner, config_file, "backups", "--kind", "pre-deletion")
    assert result.exit_code == 0
    backups = SafetyManager(Config(config_file)).list_backups(BackupKind.PRE_DELETION)
    assert len(backups) == 1
    backup_id = backups[0]["id"]

    result = _invoke(runner, config_file, "verify-backup", backup_id)
    assert result.exit_code == 0, result.output

    result = _invoke(runner, config_file, "restore", backup_id)
    assert result.exit_code == 0, result.output
    assert sorted(p.name for p in library.iterdir()) == ["copy.png", "original.png", "unique.png"]


def test_delete_requires_typed_confirmation(runner, config_file, library, tmp_path):
    report = tmp_path / "report.json"
    _invoke(runner, config_file, "scan", "--path", str(library), "--output", str(report), "--no-progress")

    result = _invoke(
        runner, config_file, "delete", "--input", str(report), "--no-progress", input="no\n"
    )

    assert result.exit_code == 0
    assert "cancelled" in result.output
    assert len(list(library.iterdir())) == 3


def test_restore_unknown_backup_fails(runner, config_file):
    result = _invoke(runner, config_file, "restore", "deletion_missing")
    assert result.exit_code == 1
