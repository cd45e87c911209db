"""Replay links pointing back into the test player."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote


@dataclass(frozen=True)
class ReplayUrlOptions:
    server_url: str
    auth_token: str

    @property
    def enabled(self) -> bool:
        return bool(self.server_url)


def _component(value: object) -> str:
    return quote("" if value is None else str(value), safe="")


def build_replay_url(
    server_url: str,
    login: Optional[str],
    code: Optional[str],
    group: Optional[str],
    booklet: Optional[str],
    unit: Optional[str],
    variable: Optional[str],
    page: Optional[str] = "0",
    token: Optional[str] = "",
) -> str:
    """Return the deep link that replays one variable of one test taker.

    Every path component is percent encoded on its own, so ``@``, ``/``, ``?``
    and ``#`` inside a login or unit name cannot break the link structure.
    Returns an empty string when login, code, booklet, unit or variable is
    missing.
    """
    if not all((login, code, booklet, unit, variable)):
        return ""
    base = (server_url or "").rstrip("/")
    person = "@".join(_component(part) for part in (login, code, group, booklet))
    page_label = "0" if page in (None, "") else page
    return (
        f"{base}/#/replay/{person}/{_component(unit)}/{_component(page_label)}"
        f"/{_component(variable)}?auth={_component(token)}"
    )
