"""Utility helpers for codebench."""
from __future__ import annotations

import hashlib
import os
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence


def ensure_dir(path: os.PathLike[str] | str) -> Path:
    """Ensure directory exists and return its :class:`Path`."""
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def deterministic_choice(items: Sequence, seed: int | str) -> list:
    """Return shuffled copy of items using deterministic seed."""
    rnd = random.Random()
    if isinstance(seed, str):
        seed_int = int(hashlib.sha256(seed.encode("utf-8")).hexdigest(), 16) % (2**32)
    else:
        seed_int = seed
    rnd.seed(seed_int)
    copy = list(items)
    rnd.shuffle(copy)
    return copy


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def format_timestamp(value: str | datetime | None) -> str:
    """Render a stored ISO timestamp as ``dd.mm.yyyy HH:MM:SS`` for exports."""
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    return value.strftime("%d.%m.%Y %H:%M:%S")
