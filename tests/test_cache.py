from __future__ import annotations

import asyncio
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from codebench.cache import VariablePageCache, declared_variables, parse_exclusions, parse_page_map
from codebench.shared.keys import VariableKey


class FakeSource:
    def __init__(self) -> None:
        self.calls = []
        self.definitions = {
            "UNIT1": {"variables": ["V0"], "pages": [{"variables": ["V1"]}, {"variables": ["V2", "V1"]}]},
            "BROKEN": {"pages": "not a list of pages"},
        }
        self.schemes = {"UNIT1": {"variableCodings": [{"id": "V2", "sourceType": "BASE_NO_VALUE"}]}}

    def unit_resource(self, workspace_id, unit_name, kind):
        self.calls.append((workspace_id, unit_name, kind))
        if unit_name == "FAILING":
            raise OSError("unit file unreadable")
        return self.definitions.get(unit_name)

    def unit_resources(self, workspace_id, kind):
        self.calls.append((workspace_id, kind))
        return self.definitions if kind == "definition" else self.schemes


def test_parse_page_map_keeps_first_page() -> None:
    definition = {"pages": [{"variables": ["V1"]}, {"variables": ["V2", "V1"]}]}

    assert parse_page_map(definition) == {"V1": "0", "V2": "1"}
    assert parse_page_map({}) == {}
    assert declared_variables({"variables": ["V0"], "pages": [{"variables": ["V1"]}]}) == {"V0", "V1"}


def test_parse_exclusions_upper_cases_units() -> None:
    scheme = {"variableCodings": [{"id": "V3", "sourceType": "BASE_NO_VALUE"}, {"id": "V1"}, {"sourceType": "BASE_NO_VALUE"}]}

    assert parse_exclusions("unit1", scheme) == {VariableKey("UNIT1", "V3")}


def test_concurrent_lookups_share_one_load() -> None:
    source = FakeSource()
    cache = VariablePageCache.for_export(1, source)

    async def lookups():
        return await asyncio.gather(*(cache.page_for("unit1", variable) for variable in ("V1", "V2", "V9")))

    assert asyncio.run(lookups()) == ["0", "1", "0"]
    assert source.calls == [(1, "UNIT1", "definition")]


def test_unreadable_units_fall_back_to_first_page() -> None:
    source = FakeSource()
    cache = VariablePageCache.for_export(1, source)

    assert asyncio.run(cache.page_for("FAILING", "V1")) == "0"
    assert asyncio.run(cache.page_for("BROKEN", "V1")) == "0"
    assert asyncio.run(cache.page_for("MISSING", "V1")) == "0"


def test_exclusions_and_declared_variables_are_memoized() -> None:
    source = FakeSource()
    cache = VariablePageCache.for_export(1, source)

    assert cache.is_excluded(VariableKey("unit1", "V2")) is True
    assert cache.is_excluded(VariableKey("UNIT1", "V1")) is False
    assert asyncio.run(cache.exclusions()) == {VariableKey("UNIT1", "V2")}
    assert cache.declared_variables("unit1") == {"V0", "V1", "V2"}
    assert cache.declared_variables("UNKNOWN") == frozenset()
    assert source.calls == [(1, "scheme"), (1, "definition")]


def test_switching_workspace_clears_entries() -> None:
    source = FakeSource()
    cache = VariablePageCache.for_export(1, source)
    asyncio.run(cache.page_for("UNIT1", "V1"))
    cache.load_exclusions()

    cache.observe_workspace(1)
    asyncio.run(cache.page_for("UNIT1", "V1"))
    assert len(source.calls) == 2

    cache.observe_workspace(2)
    asyncio.run(cache.page_for("UNIT1", "V1"))
    cache.load_exclusions()
    assert source.calls[2:] == [(2, "UNIT1", "definition"), (2, "scheme")]
