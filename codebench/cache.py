"""Per-export cache of unit page layouts and scheme exclusions."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, FrozenSet, Optional, Protocol

from .shared.keys import VariableKey

log = logging.getLogger(__name__)

DEFAULT_PAGE = "0"
BASE_NO_VALUE = "BASE_NO_VALUE"


class UnitResourceSource(Protocol):
    def unit_resource(self, workspace_id: int, unit_name: str, kind: str) -> Optional[dict]: ...

    def unit_resources(self, workspace_id: int, kind: str) -> Dict[str, dict]: ...


def parse_page_map(definition: dict) -> Dict[str, str]:
    """Map each variable of a unit definition to the label of its first page."""
    pages: Dict[str, str] = {}
    for index, page in enumerate(definition.get("pages") or []):
        for variable in page.get("variables") or []:
            pages.setdefault(str(variable), str(index))
    return pages


def declared_variables(definition: dict) -> FrozenSet[str]:
    declared = {str(variable) for variable in definition.get("variables") or []}
    for page in definition.get("pages") or []:
        declared.update(str(variable) for variable in page.get("variables") or [])
    return frozenset(declared)


def parse_exclusions(unit_name: str, scheme: dict) -> set[VariableKey]:
    excluded = set()
    for coding in scheme.get("variableCodings") or []:
        if coding.get("sourceType") == BASE_NO_VALUE and coding.get("id"):
            excluded.add(VariableKey(unit_name.upper(), str(coding["id"])))
    return excluded


class VariablePageCache:
    """Memoizes page maps and the exclusion set for one workspace.

    Instances are created per export with :meth:`for_export` and cleared when
    the export starts and ends. Lookups are async so concurrent row enrichment
    for the same unit shares a single store round trip.
    """

    def __init__(self, source: UnitResourceSource) -> None:
        self.source = source
        self.workspace_id: Optional[int] = None
        self._page_maps: Dict[str, Dict[str, str]] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._definitions: Optional[Dict[str, dict]] = None
        self._exclusions: Optional[FrozenSet[VariableKey]] = None

    @classmethod
    def for_export(cls, workspace_id: int, source: UnitResourceSource) -> "VariablePageCache":
        cache = cls(source)
        cache.observe_workspace(workspace_id)
        return cache

    def observe_workspace(self, workspace_id: int) -> None:
        if self.workspace_id != workspace_id:
            self.clear()
            self.workspace_id = workspace_id

    def clear(self) -> None:
        self._page_maps.clear()
        self._pending.clear()
        self._definitions = None
        self._exclusions = None

    def _require_workspace(self) -> int:
        if self.workspace_id is None:
            raise RuntimeError("VariablePageCache used before a workspace was observed")
        return self.workspace_id

    async def page_map(self, unit_name: str) -> Dict[str, str]:
        key = unit_name.upper()
        cached = self._page_maps.get(key)
        if cached is not None:
            return cached
        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load_page_map(key))
            self._pending[key] = pending
        page_map = await pending
        self._page_maps[key] = page_map
        self._pending.pop(key, None)
        return page_map

    async def _load_page_map(self, unit_name: str) -> Dict[str, str]:
        workspace_id = self._require_workspace()
        try:
            definition = await asyncio.to_thread(
                self.source.unit_resource, workspace_id, unit_name, "definition"
            )
        except Exception as exc:  # a broken unit file only costs the page anchor
            log.debug("page map unavailable", extra={"unit": unit_name, "error": str(exc)})
            return {}
        if not isinstance(definition, dict):
            return {}
        try:
            return parse_page_map(definition)
        except (AttributeError, TypeError) as exc:
            log.debug("page map unparsable", extra={"unit": unit_name, "error": str(exc)})
            return {}

    async def page_for(self, unit_name: str, variable_id: str) -> str:
        page_map = await self.page_map(unit_name)
        return page_map.get(variable_id, DEFAULT_PAGE)

    def unit_definitions(self) -> Dict[str, dict]:
        if self._definitions is None:
            self._definitions = self.source.unit_resources(self._require_workspace(), "definition")
        return self._definitions

    def declared_variables(self, unit_name: str) -> FrozenSet[str]:
        definition = self.unit_definitions().get(unit_name.upper())
        if not isinstance(definition, dict):
            return frozenset()
        try:
            return declared_variables(definition)
        except (AttributeError, TypeError):
            log.debug("definition ignored", extra={"unit": unit_name})
            return frozenset()

    def load_exclusions(self) -> FrozenSet[VariableKey]:
        if self._exclusions is None:
            excluded: set[VariableKey] = set()
            schemes = self.source.unit_resources(self._require_workspace(), "scheme")
            for unit_name, scheme in schemes.items():
                if not isinstance(scheme, dict):
                    log.debug("scheme ignored", extra={"unit": unit_name})
                    continue
                try:
                    excluded |= parse_exclusions(unit_name, scheme)
                except (AttributeError, TypeError):
                    log.debug("scheme ignored", extra={"unit": unit_name})
            self._exclusions = frozenset(excluded)
        return self._exclusions

    async def exclusions(self) -> FrozenSet[VariableKey]:
        if self._exclusions is None:
            return await asyncio.to_thread(self.load_exclusions)
        return self._exclusions

    def is_excluded(self, key: VariableKey) -> bool:
        return key.normalized() in self.load_exclusions()
