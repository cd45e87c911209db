from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codebench.config import ExportLimits, WorkbenchConfig
from codebench.errors import ConfigurationError, ExportCancelled
from codebench.runtime import CancellationToken, CancelledError, Checkpoint, JsonFormatter


def test_limits_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("CODEBENCH_EXPORT_BATCH_SIZE", "250")
    monkeypatch.setenv("CODEBENCH_EXPORT_MAX_SEGMENTS", "not a number")
    monkeypatch.setenv("CODEBENCH_DB", "/tmp/bench.db")

    limits = ExportLimits()
    assert limits.batch_size == 250
    assert limits.max_segments == 100
    assert WorkbenchConfig().database_path == Path("/tmp/bench.db")


def test_limits_must_be_positive() -> None:
    with pytest.raises(ConfigurationError, match="batch_size"):
        ExportLimits(batch_size=0).validate()
    assert ExportLimits(batch_size=1).validate().batch_size == 1


def test_json_formatter_keeps_extra_fields() -> None:
    record = logging.LogRecord("codebench.pipeline", logging.INFO, __file__, 1, "export %s", ("done",), None)
    record.workspace_id = 3
    record.segment = object()

    payload = json.loads(JsonFormatter().format(record))

    assert payload["msg"] == "export done"
    assert payload["level"] == "INFO"
    assert payload["workspace_id"] == 3
    assert payload["segment"].startswith("<object")


def test_token_polls_its_callback_once_set() -> None:
    flags = [False, True, False]
    token = CancellationToken(lambda: flags.pop(0))

    assert token.cancelled is False
    assert token.cancelled is True
    assert token.cancelled is True


def test_checkpoint_raises_the_configured_error() -> None:
    token = CancellationToken()
    checkpoint = Checkpoint(token, error=ExportCancelled)

    asyncio.run(checkpoint("page"))
    assert checkpoint.passed == 1

    token.cancel()
    with pytest.raises(CancelledError, match="during page"):
        asyncio.run(checkpoint("page"))
    with pytest.raises(ExportCancelled):
        checkpoint.check("segment")
