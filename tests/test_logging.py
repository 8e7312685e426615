# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for logging helpers and the structured records the verifier emits."""

from __future__ import annotations

import io
import json
import logging
import sys
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import pytest

from wfs_ets.capabilities import TypeName
from wfs_ets.locking import LockLifecycleModel
from wfs_ets.logging_utils import KNOWN_LOGGER_NAMES, WfsJsonFormatter, configure_logging
from wfs_ets.reference import REFERENCE_NS

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext

ROAD = TypeName(REFERENCE_NS, "Road", "tns")


def _extra(record: logging.LogRecord, key: str) -> Any:
    """Read a dynamic extra field from a log record without ``type: ignore``."""
    return record.__dict__[key]


def _record(msg: str = "test message", level: int = logging.INFO, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(name="test", level=level, pathname="", lineno=0, msg=msg, args=(), exc_info=None)
    record.__dict__.update(extra)
    return record


@pytest.fixture
def _reset_loggers() -> Iterator[None]:
    """Save and restore logger handlers and levels after each test."""
    saved = {name: (logging.getLogger(name).level, list(logging.getLogger(name).handlers)) for name in KNOWN_LOGGER_NAMES}
    yield
    for name, (level, handlers) in saved.items():
        logger = logging.getLogger(name)
        logger.handlers[:] = handlers
        logger.setLevel(level)


# ---------------------------------------------------------------------------
# WfsJsonFormatter tests
# ---------------------------------------------------------------------------


class TestWfsJsonFormatter:
    """Tests for WfsJsonFormatter."""

    def test_valid_json_output(self) -> None:
        """Output should be valid JSON."""
        parsed = json.loads(WfsJsonFormatter().format(_record()))
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test"
        assert parsed["message"] == "test message"
        assert "timestamp" in parsed

    def test_extra_fields_in_output(self) -> None:
        """Extra fields should appear in JSON output."""
        parsed = json.loads(WfsJsonFormatter().format(_record(lock_id="lock-0001", binding="SOAP")))
        assert parsed["lock_id"] == "lock-0001"
        assert parsed["binding"] == "SOAP"

    def test_reserved_keys_not_overwritten(self) -> None:
        """An extra named like a standard field does not replace it."""
        parsed = json.loads(WfsJsonFormatter().format(_record(level="fake")))
        assert parsed["level"] == "INFO"

    def test_exception_info_included(self) -> None:
        """Exception info should be included in JSON output."""
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()
        record = logging.LogRecord(
            name="test", level=logging.ERROR, pathname="", lineno=0, msg="error", args=(), exc_info=exc_info
        )
        parsed = json.loads(WfsJsonFormatter().format(record))
        assert "ValueError" in parsed["exception"]

    def test_default_str_handles_non_serializable(self) -> None:
        """Non-serializable values should be coerced to strings."""
        parsed = json.loads(WfsJsonFormatter().format(_record(ids=frozenset({"road.1"}))))
        assert parsed["ids"] == "frozenset({'road.1'})"


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    """Handler attachment by the CLI helper."""

    def test_default_logger(self, _reset_loggers: None) -> None:
        """Without names the package root logger is configured."""
        stream = io.StringIO()
        handler = configure_logging("debug", stream=stream)
        root = logging.getLogger("wfs_ets")
        assert root.level == logging.DEBUG
        assert handler in root.handlers
        logging.getLogger("wfs_ets.paging").debug("hello")
        assert "wfs_ets.paging" in stream.getvalue()
        assert "hello" in stream.getvalue()

    def test_json_format(self, _reset_loggers: None) -> None:
        """fmt=json installs the JSON formatter."""
        stream = io.StringIO()
        configure_logging("INFO", ["wfs_ets.ledger"], "json", stream=stream)
        logging.getLogger("wfs_ets.ledger").info("released", extra={"resource_id": "lock-1"})
        line = json.loads(stream.getvalue().splitlines()[-1])
        assert line["resource_id"] == "lock-1"

    def test_unknown_level(self) -> None:
        """An unknown level name is rejected."""
        with pytest.raises(ValueError, match="LOUD"):
            configure_logging("LOUD")

    def test_unknown_logger_warns(self, _reset_loggers: None, capsys: pytest.CaptureFixture[str]) -> None:
        """An unknown logger name is configured but flagged."""
        configure_logging("INFO", ["wfs_ets.nope"], stream=io.StringIO())
        assert "unknown logger 'wfs_ets.nope'" in capsys.readouterr().err
        logging.getLogger("wfs_ets.nope").handlers.clear()


# ---------------------------------------------------------------------------
# Records emitted by the verifier
# ---------------------------------------------------------------------------


class TestStructuredRecords:
    """Operations log with extra fields describing the resource involved."""

    def test_lock_records_carry_lock_id(self, ctx: VerificationContext, caplog: pytest.LogCaptureFixture) -> None:
        """Lock acquisition logs the lock id as an extra field."""
        with caplog.at_level(logging.DEBUG, logger="wfs_ets.locking"):
            outcome = LockLifecycleModel(ctx).acquire(ROAD, ["road.1"])
        lock_records = [r for r in caplog.records if r.name == "wfs_ets.locking" and "lock_id" in r.__dict__]
        assert lock_records
        assert _extra(lock_records[0], "lock_id") == outcome.lock.lock_id

    def test_wire_records(self, ctx: VerificationContext, caplog: pytest.LogCaptureFixture) -> None:
        """Requests and responses are logged on the wire loggers."""
        with caplog.at_level(logging.DEBUG, logger="wfs_ets.wire"):
            LockLifecycleModel(ctx).acquire(ROAD, ["road.2"])
        names = {r.name for r in caplog.records}
        assert {"wfs_ets.wire.request", "wfs_ets.wire.response"} <= names

