# registries.py
# SPDX-License-Identifier: MIT
"""Registries for row codecs, named filter operators and merge strategies.

Codecs are looked up by file suffix. Filter operators and merge
strategies give declarative configs (TOML/JSON, CLI flags) a way to name
the caller-supplied functions a job needs.
"""
from __future__ import annotations

import operator
import re
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .interfaces import KeyExtractor, MergeFunction, Record, RowCodec
from .log import get_logger

log = get_logger(__name__)

CodecFactory = Callable[[], RowCodec]


@dataclass
class CodecRegistry:
    """Map file suffixes (``.csv``, ``.csv.gz`` ...) to codec factories."""

    _factories: dict[str, CodecFactory] = field(default_factory=dict)

    def register(self, suffixes: Iterable[str], factory: CodecFactory, *, replace: bool = False) -> None:
        for suffix in suffixes:
            key = suffix.lower()
            if not key.startswith("."):
                key = "." + key
            if not replace and key in self._factories:
                raise ValueError(f"Codec for suffix {key!r} is already registered")
            self._factories[key] = factory

    def codec(self, *suffixes: str, replace: bool = False) -> Callable[[CodecFactory], CodecFactory]:
        """Decorator registering a codec factory for ``suffixes``."""
        def decorator(factory: CodecFactory) -> CodecFactory:
            self.register(suffixes, factory, replace=replace)
            return factory

        return decorator

    def _match(self, path: Path | str) -> str | None:
        name = Path(path).name.lower()
        # Longest suffix first so ".csv.gz" wins over ".gz".
        for suffix in sorted(self._factories, key=len, reverse=True):
            if name.endswith(suffix) and len(name) > len(suffix):
                return suffix
        return None

    def supports(self, path: Path | str) -> bool:
        return self._match(path) is not None

    def for_path(self, path: Path | str) -> RowCodec:
        """Build the codec responsible for ``path``.

        Raises:
            ValueError: If no codec handles the file's suffix.
        """
        suffix = self._match(path)
        if suffix is None:
            raise ValueError(
                f"No codec registered for {Path(path).name!r}; supported suffixes: {', '.join(self.suffixes())}"
            )
        return self._factories[suffix]()

    def suffixes(self) -> list[str]:
        return sorted(self._factories)


def default_codec_registry() -> CodecRegistry:
    """Return a registry with the built-in CSV, JSONL, Parquet and XLSX codecs."""
    from ..codecs.csvio import CSVCodec
    from ..codecs.jsonlio import JSONLCodec
    from ..codecs.parquetio import ParquetCodec
    from ..codecs.xlsxio import XLSXCodec

    reg = CodecRegistry()
    reg.register((".csv", ".csv.gz", ".tsv", ".tsv.gz"), CSVCodec)
    reg.register((".jsonl", ".jsonl.gz", ".ndjson"), JSONLCodec)
    reg.register((".parquet", ".pq"), ParquetCodec)
    reg.register((".xlsx", ".xlsm"), XLSXCodec)
    return reg


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def key_from_columns(columns: Sequence[str]) -> KeyExtractor:
    """Build a key extractor over one or more columns.

    A single column yields the bare value; several yield a tuple. The key
    is None (record dropped) when any key column is blank.
    """
    cols = tuple(columns)
    if not cols:
        raise ValueError("key_from_columns requires at least one column")

    def extract(record: Record) -> Hashable | None:
        values = tuple(record[c] for c in cols)
        if any(_is_blank(v) for v in values):
            return None
        return values[0] if len(values) == 1 else values

    extract.__name__ = f"key({','.join(cols)})"
    return extract


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def _comparable(left: Any, right: Any) -> Any:
    """Coerce a text cell to a number when compared against a number."""
    if isinstance(left, str) and isinstance(right, (int, float)) and not isinstance(right, bool):
        return float(left.strip())
    return left


def _ordering(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if left is None:
            return False
        return op(_comparable(left, right), right)

    return compare


def _equality(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if left is not None and right is not None:
            try:
                left = _comparable(left, right)
            except ValueError:
                pass
        return op(left, right)

    return compare


FILTER_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "==": _equality(operator.eq),
    "!=": _equality(operator.ne),
    ">": _ordering(operator.gt),
    ">=": _ordering(operator.ge),
    "<": _ordering(operator.lt),
    "<=": _ordering(operator.le),
    "in": lambda left, right: left in right,
    "not_in": lambda left, right: left not in right,
    "empty": lambda left, _right: _is_blank(left),
    "not_empty": lambda left, _right: not _is_blank(left),
}


@dataclass(frozen=True)
class ColumnCondition:
    """A single ``column op value`` predicate; implements ``accept``."""

    column: str
    op: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unknown filter op {self.op!r}; expected one of {sorted(FILTER_OPS)}")

    def accept(self, record: Record) -> bool:
        return bool(FILTER_OPS[self.op](record.get(self.column), self.value))

    def __str__(self) -> str:
        return f"{self.column} {self.op} {self.value!r}"


@dataclass(frozen=True)
class AllOf:
    """Keep a record only when every condition accepts it."""

    conditions: tuple[ColumnCondition, ...]

    def accept(self, record: Record) -> bool:
        return all(cond.accept(record) for cond in self.conditions)


def build_filter(specs: Iterable[Mapping[str, Any] | ColumnCondition]) -> AllOf | None:
    """Combine ``{column, op, value}`` mappings into one filter (None when empty)."""
    conditions: list[ColumnCondition] = []
    for spec in specs:
        if isinstance(spec, ColumnCondition):
            conditions.append(spec)
            continue
        unknown = set(spec) - {"column", "op", "value"}
        if unknown or "column" not in spec or "op" not in spec:
            raise ValueError(f"Filter entries need 'column' and 'op' (optional 'value'); got {dict(spec)!r}")
        conditions.append(ColumnCondition(str(spec["column"]), str(spec["op"]), spec.get("value")))
    return AllOf(tuple(conditions)) if conditions else None


_EXPR_RE = re.compile(r"^\s*(?P<column>[^=!<>]+?)\s*(?P<op>==|!=|>=|<=|>|<)\s*(?P<value>.*?)\s*$")


def _literal(text: str) -> Any:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    for cast in (int, float):
        try:
            return cast(text)
        except ValueError:
            continue
    return text


def parse_filter_expression(expr: str) -> ColumnCondition:
    """Parse ``"points>0"`` / ``"region == 'EU'"`` into a condition.

    Raises:
        ValueError: If the expression does not match ``column op value``.
    """
    match = _EXPR_RE.match(expr or "")
    if not match:
        raise ValueError(f"Cannot parse filter expression {expr!r}; expected 'column op value'")
    return ColumnCondition(match["column"], match["op"], _literal(match["value"]))


# ---------------------------------------------------------------------------
# Merge strategies
# ---------------------------------------------------------------------------

MergeFactory = Callable[[str | None], MergeFunction]


def _keep_first(_arg: str | None) -> MergeFunction:
    def merge(existing: Record, incoming: Record) -> Record:
        return existing

    return merge


def _keep_last(_arg: str | None) -> MergeFunction:
    def merge(existing: Record, incoming: Record) -> Record:
        return incoming

    return merge


def _coalesce(_arg: str | None) -> MergeFunction:
    def merge(existing: Record, incoming: Record) -> Record:
        merged = dict(existing)
        for key, value in incoming.items():
            if _is_blank(merged.get(key)) and not _is_blank(value):
                merged[key] = value
        return merged

    return merge


def _numeric(value: Any) -> Any:
    if isinstance(value, str):
        return float(value.strip())
    return value


def _pick(column: str | None, prefer_incoming: Callable[[Any, Any], bool]) -> MergeFunction:
    if not column:
        raise ValueError("this merge strategy needs a column, e.g. 'max:points'")

    def merge(existing: Record, incoming: Record) -> Record:
        new = incoming.get(column)
        if _is_blank(new):
            return existing
        old = existing.get(column)
        if _is_blank(old):
            return incoming
        return incoming if prefer_incoming(_numeric(new), _numeric(old)) else existing

    return merge


def _sum(column: str | None) -> MergeFunction:
    if not column:
        raise ValueError("the sum merge strategy needs a column, e.g. 'sum:amount'")

    def merge(existing: Record, incoming: Record) -> Record:
        merged = dict(existing)
        old, new = existing.get(column), incoming.get(column)
        if _is_blank(new):
            return existing
        merged[column] = _numeric(new) if _is_blank(old) else _numeric(old) + _numeric(new)
        return merged

    return merge


MERGE_STRATEGIES: dict[str, MergeFactory] = {
    "keep_first": _keep_first,
    "keep_last": _keep_last,
    "coalesce": _coalesce,
    "max": lambda col: _pick(col, operator.gt),
    "min": lambda col: _pick(col, operator.lt),
    "sum": _sum,
}


def build_merge(spec: str) -> MergeFunction:
    """Resolve ``"name"`` or ``"name:column"`` to a merge function.

    Raises:
        ValueError: For unknown strategies or a missing column argument.
    """
    name, _, arg = (spec or "").partition(":")
    name = name.strip().lower()
    factory = MERGE_STRATEGIES.get(name)
    if factory is None:
        raise ValueError(f"Unknown merge strategy {spec!r}; expected one of {sorted(MERGE_STRATEGIES)}")
    return factory(arg.strip() or None)


__all__ = [
    "CodecRegistry",
    "default_codec_registry",
    "key_from_columns",
    "ColumnCondition",
    "AllOf",
    "FILTER_OPS",
    "build_filter",
    "parse_filter_expression",
    "MERGE_STRATEGIES",
    "build_merge",
]
