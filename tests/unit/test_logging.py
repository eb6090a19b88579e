"""Tests for kubesim.observability.logging."""

from __future__ import annotations

import structlog

from kubesim.observability.logging import get_logger, tick_context


class TestTickContext:
    def test_binds_scenario_and_tick(self) -> None:
        with tick_context("hpa", 3):
            assert structlog.contextvars.get_contextvars() == {"scenario": "hpa", "tick": 3}

    def test_unbinds_on_exit(self) -> None:
        with tick_context("hpa", 3):
            pass
        assert "tick" not in structlog.contextvars.get_contextvars()

    def test_no_scenario_is_none(self) -> None:
        with tick_context("", 0):
            assert structlog.contextvars.get_contextvars()["scenario"] is None


class TestGetLogger:
    def test_returns_bindable_logger(self) -> None:
        logger = get_logger("scheduler")
        assert logger.bind(pod="web-1") is not None
