import logging

import pytest
from pydantic import ValidationError

from radical.futures.config import FutureSettings, configure, get_settings, reset_settings


def test_defaults():
    settings = FutureSettings()

    assert settings.plan == "sequential"
    assert settings.seed is None
    assert settings.search_depth == 2
    assert settings.stdout is True


def test_from_env():
    settings = FutureSettings.from_env({
        "RADICAL_FUTURES_PLAN": " Multisession ",
        "RADICAL_FUTURES_SEED": "42",
        "RADICAL_FUTURES_STDOUT": "false",
        "RADICAL_FUTURES_GRACE_PERIOD": "1.5",
        "UNRELATED": "x",
    })

    assert settings.plan == "multisession"
    assert settings.seed == 42
    assert settings.stdout is False
    assert settings.grace_period == 1.5


def test_invalid_env_is_ignored(caplog):
    with caplog.at_level(logging.WARNING, logger="radical.futures.config"):
        settings = FutureSettings.from_env({"RADICAL_FUTURES_SEARCH_DEPTH": "-1"})

    assert settings.search_depth == 2
    assert "Ignoring invalid" in caplog.text


def test_get_settings_reads_environment_once(monkeypatch):
    monkeypatch.setenv("RADICAL_FUTURES_SEED", "7")
    reset_settings()

    assert get_settings().seed == 7
    monkeypatch.setenv("RADICAL_FUTURES_SEED", "8")
    assert get_settings().seed == 7

    reset_settings()
    assert get_settings().seed == 8


def test_configure_overrides():
    configure(grace_period=0.5)

    assert get_settings().grace_period == 0.5
    assert get_settings().plan == "sequential"


def test_configure_validates():
    with pytest.raises(ValidationError):
        configure(grace_period=-1)
