# schema.py
# SPDX-License-Identifier: MIT
"""Output schema: column order plus optional per-column type conversion.

Decoded rows are projected onto the schema before they enter the
pipeline, so every record the processor and writer see has exactly the
schema's columns in the schema's order.
"""
from __future__ import annotations

import datetime as _dt
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import SchemaError

__all__ = ["RecordSchema", "CONVERTERS", "convert_value"]

_TRUE = {"true", "t", "yes", "y", "1", "on"}
_FALSE = {"false", "f", "no", "n", "0", "off"}


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value!r} is not an integral number")
        return int(value)
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        as_float = float(text)
        if not as_float.is_integer():
            raise
        return int(as_float)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"{value!r} is not a boolean")


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"{value!r} is not a decimal") from exc


def _to_date(value: Any) -> _dt.date:
    if isinstance(value, _dt.datetime):
        return value.date()
    if isinstance(value, _dt.date):
        return value
    return _dt.date.fromisoformat(str(value).strip())


def _to_datetime(value: Any) -> _dt.datetime:
    if isinstance(value, _dt.datetime):
        return value
    if isinstance(value, _dt.date):
        return _dt.datetime.combine(value, _dt.time())
    return _dt.datetime.fromisoformat(str(value).strip())


CONVERTERS: dict[str, Callable[[Any], Any]] = {
    "str": str,
    "int": _to_int,
    "float": float,
    "bool": _to_bool,
    "decimal": _to_decimal,
    "date": _to_date,
    "datetime": _to_datetime,
}


def convert_value(type_name: str, value: Any) -> Any:
    """Convert ``value`` with the named converter; blanks become None."""
    if value is None or (isinstance(value, str) and not value.strip() and type_name != "str"):
        return None
    return CONVERTERS[type_name](value)


@dataclass(frozen=True, slots=True)
class RecordSchema:
    """Ordered output columns and their declared types.

    Attributes:
        columns (tuple[str, ...]): Output columns in order.
        types (Mapping[str, str]): Optional ``column -> type name``
            mapping; names are keys of :data:`CONVERTERS`. Columns without
            an entry pass through unchanged.
    """

    columns: tuple[str, ...]
    types: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(str(c) for c in self.columns))
        object.__setattr__(self, "types", dict(self.types or {}))

    def problems(self) -> list[str]:
        """Return a list of structural problems (empty when valid)."""
        issues: list[str] = []
        if not self.columns:
            issues.append("schema has no columns")
        seen: set[str] = set()
        for col in self.columns:
            if not col:
                issues.append("schema has an empty column name")
            elif col in seen:
                issues.append(f"schema column {col!r} is duplicated")
            seen.add(col)
        for col, type_name in self.types.items():
            if col not in seen:
                issues.append(f"schema type given for unknown column {col!r}")
            if type_name not in CONVERTERS:
                issues.append(
                    f"schema column {col!r} has unknown type {type_name!r}; "
                    f"expected one of {sorted(CONVERTERS)}"
                )
        return issues

    def apply(self, raw: Mapping[str, Any]) -> dict[str, Any]:
        """Project ``raw`` onto the schema, converting typed columns.

        Missing columns become None and extra columns are dropped.

        Raises:
            SchemaError: If a value cannot be converted to its column type.
        """
        out: dict[str, Any] = {}
        types = self.types
        for col in self.columns:
            value = raw.get(col)
            type_name = types.get(col)
            if type_name is not None:
                try:
                    value = convert_value(type_name, value)
                except (TypeError, ValueError, ArithmeticError) as exc:
                    raise SchemaError(col, value, exc) from exc
            out[col] = value
        return out

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"columns": list(self.columns)}
        if self.types:
            data["types"] = dict(self.types)
        return data
