"""Runtime utilities for logging, cancellation and cooperative yielding."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Callable, Optional


class JsonFormatter(logging.Formatter):
    _RESERVED = frozenset(
        (
            "args",
            "msg",
            "levelname",
            "levelno",
            "pathname",
            "filename",
            "module",
            "exc_info",
            "exc_text",
            "stack_info",
            "lineno",
            "funcName",
            "created",
            "msecs",
            "relativeCreated",
            "thread",
            "threadName",
            "processName",
            "process",
            "taskName",
        )
    )

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        base = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
        }
        for k, v in getattr(record, "__dict__", {}).items():
            if k in self._RESERVED or k.startswith("_") or k in base:
                continue
            try:
                json.dumps({k: v})
                base[k] = v
            except (TypeError, ValueError):
                base[k] = str(v)
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger()
    if logger.handlers:
        return logger
    logger.setLevel(level)
    ch = logging.StreamHandler()
    ch.setFormatter(JsonFormatter())
    logger.addHandler(ch)
    return logger


class CancelledError(RuntimeError):
    """Raised when a cancellation request is received."""


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running export.

    A token can be cancelled explicitly with :meth:`cancel` or wrap a callback
    that is polled at every checkpoint, mirroring how long running loops poll
    a UI's stop button.
    """

    def __init__(self, callback: Optional[Callable[[], bool]] = None) -> None:
        self._callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._callback is not None and self._callback():
            self._cancelled = True
        return self._cancelled


class Checkpoint:
    """Cancellation check plus a yield back to the event loop."""

    def __init__(
        self,
        token: Optional[CancellationToken] = None,
        error: type[CancelledError] = CancelledError,
    ) -> None:
        self.token = token
        self._error = error
        self.passed = 0

    def check(self, stage: str) -> None:
        if self.token is not None and self.token.cancelled:
            raise self._error(f"Export cancelled during {stage}")

    async def __call__(self, stage: str) -> None:
        self.check(stage)
        self.passed += 1
        await asyncio.sleep(0)
