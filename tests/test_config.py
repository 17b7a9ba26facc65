"""Tests for configuration helpers."""

import pytest

from ui_review import config
from ui_review.errors import ConfigError
from ui_review.models.page import PageSpec, TokenAuthSpec


def test_resolve_viewports_in_order() -> None:
    viewports = config.resolve_viewports(["mobile", "desktop"])

    assert [(v.name, v.width, v.height) for v in viewports] == [
        ("mobile", 375, 812),
        ("desktop", 1920, 1080),
    ]


def test_resolve_viewports_rejects_unknown_and_empty() -> None:
    with pytest.raises(ConfigError, match="Unknown viewport"):
        config.resolve_viewports(["desktop", "watch"])
    with pytest.raises(ConfigError):
        config.resolve_viewports([])


def test_validate_settings_checks_timeout(monkeypatch) -> None:
    config.validate_settings()
    monkeypatch.setattr(config, "ANALYSIS_TIMEOUT", 10)
    with pytest.raises(ConfigError, match="Timeout"):
        config.validate_settings()


def test_page_spec_validation() -> None:
    with pytest.raises(ValueError):
        PageSpec(name="Bad/Name", path="/")
    with pytest.raises(ValueError):
        PageSpec(name="Home", path="//evil.test/")
    with pytest.raises(ValueError):
        TokenAuthSpec(endpoint="https://evil.test/token")
    assert TokenAuthSpec(endpoint="/api/token", method="get").method == "GET"
