from __future__ import annotations

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codebench.replay import ReplayUrlOptions, build_replay_url


def test_builds_replay_link() -> None:
    url = build_replay_url("http://srv/", "alice", "c1", "g1", "B1", "UNIT1", "V2", "1", "tok")

    assert url == "http://srv/#/replay/alice@c1@g1@B1/UNIT1/1/V2?auth=tok"


def test_components_are_encoded_one_by_one() -> None:
    url = build_replay_url("http://srv", "a@b", "c/1", "g 1", "B#1", "U?1", "V&1", "", "t=k")

    assert url == "http://srv/#/replay/a%40b@c%2F1@g%201@B%231/U%3F1/0/V%261?auth=t%3Dk"


def test_missing_group_keeps_the_separator() -> None:
    assert build_replay_url("http://srv", "alice", "c1", None, "B1", "U1", "V1") == (
        "http://srv/#/replay/alice@c1@@B1/U1/0/V1?auth="
    )


@pytest.mark.parametrize("missing", ["login", "code", "booklet", "unit", "variable"])
def test_missing_parts_yield_empty_link(missing: str) -> None:
    parts = {"login": "alice", "code": "c1", "booklet": "B1", "unit": "U1", "variable": "V1"}
    parts[missing] = ""

    assert build_replay_url("http://srv", group="g1", **parts) == ""


def test_options_without_server_are_disabled() -> None:
    assert ReplayUrlOptions("", "tok").enabled is False
    assert ReplayUrlOptions("http://srv", "").enabled is True
