"""Composite keys used across the accounting and export code."""
from __future__ import annotations

from typing import NamedTuple


class VariableKey(NamedTuple):
    """A variable is only unique together with the unit it belongs to."""

    unit_name: str
    variable_id: str

    @property
    def label(self) -> str:
        return f"{self.unit_name}_{self.variable_id}"

    def normalized(self) -> "VariableKey":
        return VariableKey(self.unit_name.upper(), self.variable_id)


class PersonKey(NamedTuple):
    login: str
    code: str
    group: str = ""

    @property
    def label(self) -> str:
        return f"{self.login}_{self.code}"


def variable_key(item: object) -> VariableKey:
    """Build a key from a stored ``{"unit_name", "variable_id"}`` mapping or pair."""
    if isinstance(item, VariableKey):
        return item
    if isinstance(item, dict):
        unit = item.get("unit_name", item.get("unitName"))
        variable = item.get("variable_id", item.get("variableId"))
    else:
        unit, variable = item  # type: ignore[misc]
    if not unit or not variable:
        raise ValueError(f"Incomplete variable reference: {item!r}")
    return VariableKey(str(unit), str(variable))


def as_mapping(key: VariableKey) -> dict[str, str]:
    return {"unit_name": key.unit_name, "variable_id": key.variable_id}
