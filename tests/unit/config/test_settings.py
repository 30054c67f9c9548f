"""
Unit tests for environment-driven settings.
"""

from pathlib import Path

from isoflow.config.settings import (
    DEFAULT_BIOMART_DATASET,
    DEFAULT_BIOMART_HOST,
    Settings,
    get_settings,
)

ISOFLOW_ENV = [
    "ISOFLOW_LOG_LEVEL",
    "ISOFLOW_WORKSPACE",
    "ISOFLOW_ABUNDANCE_FILE",
    "ISOFLOW_QUANT_SUBDIR",
    "ISOFLOW_BIOMART_HOST",
    "ISOFLOW_BIOMART_DATASET",
    "ISOFLOW_BIOMART_TIMEOUT",
    "ISOFLOW_FILTER_MIN_READS",
    "ISOFLOW_FILTER_MIN_PROP",
    "ISOFLOW_LIVE_PORT",
]


def _clear_env(monkeypatch):
    for name in ISOFLOW_ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)

    settings = Settings()

    assert settings.LOG_LEVEL == "INFO"
    assert settings.BIOMART_HOST == DEFAULT_BIOMART_HOST
    assert settings.BIOMART_DATASET == DEFAULT_BIOMART_DATASET
    assert settings.ABUNDANCE_FILE == "abundance.h5"
    assert settings.QUANT_SUBDIR == "kallisto"
    assert settings.FILTER_MIN_READS == 5
    assert settings.FILTER_MIN_PROP == 0.47
    assert settings.WORKSPACE == tmp_path / ".isoflow"


def test_environment_overrides(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    monkeypatch.setenv("ISOFLOW_LOG_LEVEL", "debug")
    monkeypatch.setenv("ISOFLOW_WORKSPACE", str(tmp_path / "ws"))
    monkeypatch.setenv("ISOFLOW_BIOMART_HOST", "dec2015.archive.ensembl.org")
    monkeypatch.setenv("ISOFLOW_FILTER_MIN_READS", "10")
    monkeypatch.setenv("ISOFLOW_LIVE_PORT", "8501")

    settings = Settings()

    assert settings.LOG_LEVEL == "DEBUG"
    assert settings.BIOMART_HOST == "dec2015.archive.ensembl.org"
    assert settings.FILTER_MIN_READS == 10.0
    assert settings.LIVE_PORT == 8501
    assert settings.cache_dir == tmp_path / "ws" / "cache"


def test_workspace_expands_user(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("ISOFLOW_WORKSPACE", "~/isoflow-ws")

    settings = Settings()

    assert settings.WORKSPACE == Path.home() / "isoflow-ws"


def test_get_setting_and_all_settings():
    settings = get_settings()

    assert settings.get_setting("QUANT_SUBDIR") == settings.QUANT_SUBDIR
    assert settings.get_setting("NOPE", 3) == 3
    assert "BIOMART_DATASET" in settings.get_all_settings()


def test_singleton():
    assert get_settings() is get_settings()
