"""Tests for logging configuration."""

from __future__ import annotations

import logging

import structlog

from attoloop.logging_setup import bind_session, get_logger, setup_logging


def test_levels() -> None:
    assert setup_logging(debug=True) == logging.DEBUG
    assert logging.getLogger("attoloop").level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
    assert setup_logging(quiet=True) == logging.WARNING
    assert setup_logging() == logging.INFO
    assert logging.getLogger("watchdog").level == logging.INFO


def test_bind_session_replaces_context() -> None:
    bind_session(workspace="a", mode="incremental")
    bind_session(workspace="b")
    assert structlog.contextvars.get_contextvars() == {"workspace": "b"}
    structlog.contextvars.clear_contextvars()


def test_get_logger_is_usable() -> None:
    setup_logging(json_output=True)
    get_logger("attoloop.test").info("hello", iteration=1)
