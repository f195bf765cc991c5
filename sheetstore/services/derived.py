"""Sum-type derived columns.

A derived column holds the sum of its ``sum_of`` sources. Sources are resolved
per write policy:

* insert: caller value if submitted, else zero;
* update: caller value if submitted, else the stored value, else zero.

Derived sources resolve to the value computed earlier in the same pass, so
columns are evaluated in dependency order.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sheetstore.services.errors import CyclicSumDefinition, NonNumericSumSource, UnknownSumSource

ABSENT = object()
# Stands in for a derived source that already failed; never numeric.
_FAILED = object()


class ResolutionPolicy(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"


@dataclass(frozen=True)
class SumDefinition:
    column: str
    sources: tuple[str, ...]


def coerce_numeric(value: object) -> Optional[float]:
    """Return the number a source value contributes, or None if it has none."""
    if value is ABSENT or value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, Decimal)):
        return float(value)
    if isinstance(value, float):
        return None if math.isnan(value) else value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def evaluation_order(
    definitions: Sequence[SumDefinition],
    known_columns: Sequence[str] | None = None,
) -> list[SumDefinition]:
    """Order derived columns so every derived source is computed before its consumers.

    Raises :class:`UnknownSumSource` for sources outside ``known_columns`` (when
    given) and :class:`CyclicSumDefinition` for self-referencing chains.
    """
    by_name = {definition.column: definition for definition in definitions}
    if known_columns is not None:
        known = set(known_columns)
        for definition in definitions:
            for source in definition.sources:
                if source not in known:
                    raise UnknownSumSource(definition.column, source)

    ordered: list[SumDefinition] = []
    done: set[str] = set()
    visiting: list[str] = []

    def visit(definition: SumDefinition) -> None:
        if definition.column in done:
            return
        if definition.column in visiting:
            start = visiting.index(definition.column)
            raise CyclicSumDefinition([*visiting[start:], definition.column])
        visiting.append(definition.column)
        for source in definition.sources:
            dependency = by_name.get(source)
            if dependency is not None:
                visit(dependency)
        visiting.pop()
        done.add(definition.column)
        ordered.append(definition)

    for definition in definitions:
        visit(definition)
    return ordered


class DerivedColumnEngine:
    """Stateless calculator for derived column values."""

    def __init__(self, definitions: Sequence[SumDefinition]) -> None:
        self.definitions = evaluation_order(definitions)

    @property
    def columns(self) -> list[str]:
        return [definition.column for definition in self.definitions]

    @staticmethod
    def compute_sum(
        sources: Sequence[str],
        resolve: Callable[[str], object],
        *,
        column: str,
        row_number: int | None = None,
    ) -> float:
        total = 0.0
        for source in sources:
            raw = resolve(source)
            number = coerce_numeric(raw)
            if number is None:
                raise NonNumericSumSource(column=column, source=source, value=raw, row_number=row_number)
            total += number
        return float(total)

    def compute_row(
        self,
        fields: Mapping[str, object],
        *,
        policy: ResolutionPolicy = ResolutionPolicy.INSERT,
        existing: Mapping[str, object] | None = None,
        row_number: int | None = None,
    ) -> dict[str, float]:
        computed: dict[str, float] = {}

        def resolve(source: str) -> object:
            if source in computed:
                return computed[source]
            if source in fields:
                return fields[source]
            if policy is ResolutionPolicy.UPDATE and existing is not None and source in existing:
                return existing[source]
            return ABSENT

        for definition in self.definitions:
            computed[definition.column] = self.compute_sum(
                definition.sources,
                resolve,
                column=definition.column,
                row_number=row_number,
            )
        return computed

    def compute_row_lenient(
        self,
        fields: Mapping[str, object],
        *,
        row_number: int | None = None,
    ) -> tuple[dict[str, float | None], list[str]]:
        """Insert-policy computation that nulls failing columns and collects warnings.

        A derived column summing a column that already failed is nulled too.
        """
        computed: dict[str, float | None] = {}
        warnings: list[str] = []

        def resolve(source: str) -> object:
            if source in computed:
                value = computed[source]
                return _FAILED if value is None else value
            return fields.get(source, ABSENT)

        for definition in self.definitions:
            try:
                computed[definition.column] = self.compute_sum(
                    definition.sources,
                    resolve,
                    column=definition.column,
                    row_number=row_number,
                )
            except NonNumericSumSource as error:
                computed[definition.column] = None
                warnings.append(f'Non-numeric value for sum source "{error.source}" at row {row_number}')
        return computed, warnings
