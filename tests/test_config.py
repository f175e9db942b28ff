"""Tests for environment-backed engine settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from jakartashift.config import DEFAULT_EXCLUDED_DIRS, EngineSettings, load_settings


def test_defaults(monkeypatch):
    for name in ("JAKARTASHIFT_MAX_WORKERS", "JAKARTASHIFT_STATE_DIR", "JAKARTASHIFT_HIGH_RISK_MAX_BATCH"):
        monkeypatch.delenv(name, raising=False)
    settings = EngineSettings()
    assert settings.max_workers == 4
    assert settings.high_risk_max_batch == 4
    assert settings.excluded_dirs == DEFAULT_EXCLUDED_DIRS
    assert settings.rewrite_command == []
    assert settings.state_dir == Path.home() / ".jakartashift"


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("JAKARTASHIFT_MAX_WORKERS", "8")
    monkeypatch.setenv("JAKARTASHIFT_STATE_DIR", str(tmp_path))
    monkeypatch.setenv("JAKARTASHIFT_REWRITE_COMMAND", '["rewrite", "--in-place"]')

    settings = EngineSettings()

    assert settings.max_workers == 8
    assert settings.state_dir == tmp_path
    assert settings.rewrite_command == ["rewrite", "--in-place"]


def test_explicit_overrides_win_and_none_is_ignored(monkeypatch, tmp_path):
    monkeypatch.setenv("JAKARTASHIFT_MAX_WORKERS", "8")
    settings = load_settings(max_workers=2, state_dir=None, knowledge_base_path=tmp_path / "kb.yaml")
    assert settings.max_workers == 2
    assert settings.knowledge_base_path == tmp_path / "kb.yaml"


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        EngineSettings(max_workers=0)
    with pytest.raises(ValidationError):
        EngineSettings(high_density=1.5)
