from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from turnstream.core.logging_setup import configure_logging
from turnstream.core.settings import Settings, get_settings


@pytest.fixture
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults() -> None:
    cfg = Settings()

    assert cfg.reply_primer_tokens == 3
    assert cfg.usage_ratio_min == pytest.approx(1 / 3)
    assert cfg.usage_ratio_max == 2.5
    assert cfg.think_open_tag == "<think>"


def test_env_overrides(monkeypatch, fresh_settings) -> None:
    monkeypatch.setenv("TURNSTREAM_USAGE_RATIO_MAX", "4")
    monkeypatch.setenv("TURNSTREAM_STRICT_AGGREGATION", "true")

    cfg = get_settings()

    assert cfg.usage_ratio_max == 4
    assert cfg.strict_aggregation is True


@pytest.mark.parametrize("ratio_min, ratio_max", [(0, 2.5), (3, 2)])
def test_invalid_ratio_band_rejected(ratio_min: float, ratio_max: float) -> None:
    with pytest.raises(ValidationError):
        Settings(usage_ratio_min=ratio_min, usage_ratio_max=ratio_max)


def test_configure_logging_defaults(monkeypatch, fresh_settings) -> None:
    monkeypatch.delenv("TURNSTREAM_LOG_LEVEL", raising=False)

    assert configure_logging(production=True) == "INFO"
    assert configure_logging(production=False) == "DEBUG"
    assert logging.getLogger().level == logging.DEBUG


def test_configure_logging_override(monkeypatch, fresh_settings) -> None:
    monkeypatch.setenv("TURNSTREAM_LOG_LEVEL", "warning")

    assert configure_logging(production=False) == "WARNING"


def test_configure_logging_invalid_level_falls_back(monkeypatch, fresh_settings) -> None:
    monkeypatch.setenv("TURNSTREAM_LOG_LEVEL", "chatty")

    assert configure_logging(production=False) == "INFO"
