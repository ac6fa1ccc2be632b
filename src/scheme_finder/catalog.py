"""
Utility helpers for loading the program catalog CSVs and deriving fast lookups.
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

try:
    from src.scheme_finder.merger import normalize_attribute, slugify
    from src.scheme_finder.models import (
        ATTRIBUTES,
        NATIONAL,
        REGIONAL,
        EligibilityConstraint,
        Program,
    )
except ImportError:
    from .merger import normalize_attribute, slugify
    from .models import ATTRIBUTES, NATIONAL, REGIONAL, EligibilityConstraint, Program

CONSTRAINT_COLUMNS = ["program_id", "attribute", "kind", "minimum", "maximum", "values", "required"]
LIST_SEPARATOR = "|"


class ProgramCatalog:
    """
    Immutable, insertion-ordered collection of programs shared by every session.
    """

    def __init__(self, programs: Sequence[Program]) -> None:
        self._programs: Tuple[Program, ...] = tuple(programs)
        self._by_id: Dict[str, Program] = {}
        self._order: Dict[str, int] = {}
        for index, program in enumerate(self._programs):
            if program.program_id in self._by_id:
                raise ValueError(f"Duplicate program id in catalog: {program.program_id}")
            self._by_id[program.program_id] = program
            self._order[program.program_id] = index
        self.constraints_frame = pd.DataFrame(
            [
                {
                    "program_id": program.program_id,
                    "attribute": constraint.attribute,
                    "kind": constraint.kind,
                }
                for program in self._programs
                for constraint in program.constraints
            ],
            columns=["program_id", "attribute", "kind"],
        )
        self._frequency = self._build_attribute_frequency()

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "ProgramCatalog":
        """
        Build a catalog from plain dicts (JSON fixtures, tests).

        Each record needs ``program_id`` and ``name``; ``constraints`` is a list of
        ``{"attribute", "kind", ...}`` dicts.
        """
        programs = []
        for record in records:
            name = record.get("name") or {}
            if isinstance(name, str):
                name = {"en": name}
            description = record.get("description") or {}
            if isinstance(description, str):
                description = {"en": description}
            programs.append(
                Program(
                    program_id=str(record["program_id"]),
                    name=dict(name),
                    scope=record.get("scope", NATIONAL),
                    regions=tuple(slugify(region) for region in record.get("regions") or ()),
                    constraints=tuple(
                        build_constraint(item) for item in record.get("constraints") or ()
                    ),
                    description=dict(description),
                    benefits=record.get("benefits", ""),
                    process=record.get("process", ""),
                )
            )
        return cls(programs)

    def __iter__(self) -> Iterator[Program]:
        return iter(self._programs)

    def __len__(self) -> int:
        return len(self._programs)

    def __contains__(self, program_id: object) -> bool:
        return program_id in self._by_id

    @property
    def programs(self) -> Tuple[Program, ...]:
        return self._programs

    def get(self, program_id: str) -> Optional[Program]:
        return self._by_id.get(program_id)

    def order_of(self, program_id: str) -> int:
        return self._order.get(program_id, len(self._programs))

    def attribute_frequency(self) -> Dict[str, int]:
        """Number of programs that constrain each attribute (region counts regional programs)."""
        return dict(self._frequency)

    def most_common_value(self, attribute: str) -> Any:
        """
        Value most often required for ``attribute`` across the catalog.

        Used to phrase catalog-wide questions when no candidate gap exists.
        """
        if attribute == "region":
            regions = Counter(region for program in self._programs for region in program.regions)
            return _top(regions)
        values: Counter = Counter()
        bands: List[Tuple[Optional[float], Optional[float]]] = []
        flags: Counter = Counter()
        for program in self._programs:
            constraint = program.constraint_for(attribute)
            if constraint is None:
                continue
            if constraint.kind == "one_of":
                values.update(constraint.values)
            elif constraint.kind == "range":
                bands.append((constraint.minimum, constraint.maximum))
            else:
                flags[constraint.required] += 1
        if values:
            return _top(values)
        if bands:
            return _top(Counter(bands))
        if flags:
            return _top(flags)
        return None

    def _build_attribute_frequency(self) -> Dict[str, int]:
        frequency: Dict[str, int] = {}
        if not self.constraints_frame.empty:
            counts = self.constraints_frame.drop_duplicates(["program_id", "attribute"])["attribute"].value_counts()
            frequency = {str(name): int(count) for name, count in counts.items()}
        regional = sum(1 for program in self._programs if program.is_regional)
        if regional:
            frequency["region"] = frequency.get("region", 0) + regional
        return frequency


def _top(counter: Counter) -> Any:
    if not counter:
        return None
    # most_common keeps first-seen order for ties
    return counter.most_common(1)[0][0]


def build_constraint(record: Mapping[str, Any]) -> EligibilityConstraint:
    attribute = str(record["attribute"]).strip()
    if attribute not in ATTRIBUTES:
        attribute = slugify(attribute)
    kind = str(record.get("kind") or "").strip().lower()
    if kind == "range":
        return EligibilityConstraint(
            attribute=attribute,
            kind="range",
            minimum=_optional_number(record.get("minimum")),
            maximum=_optional_number(record.get("maximum")),
        )
    if kind == "one_of":
        raw_values = record.get("values") or ()
        if isinstance(raw_values, str):
            raw_values = raw_values.split(LIST_SEPARATOR)
        values = []
        for raw in raw_values:
            value = normalize_attribute(attribute, raw) if attribute in ATTRIBUTES else slugify(str(raw))
            if value is not None and value not in values:
                values.append(value)
        return EligibilityConstraint(attribute=attribute, kind="one_of", values=tuple(values))
    if kind == "flag":
        required = record.get("required")
        if isinstance(required, str):
            required = required.strip().lower() in {"true", "yes", "1"}
        return EligibilityConstraint(
            attribute=attribute,
            kind="flag",
            required=True if _is_missing(required) else bool(required),
        )
    raise ValueError(f"Unsupported constraint kind {kind!r} for attribute {attribute!r}")


def load_catalog(base_dir: Path) -> ProgramCatalog:
    """
    Load catalog CSV files and assemble the read-only ProgramCatalog.

    Inputs:
        base_dir: Directory that contains `programs.csv` and `program_constraints.csv`.

    Outputs:
        ProgramCatalog with programs in file order.
    """

    programs_df = pd.read_csv(base_dir / "programs.csv", dtype=str, keep_default_na=False)
    constraints_path = base_dir / "program_constraints.csv"
    if constraints_path.exists():
        constraints_df = pd.read_csv(constraints_path, dtype={"program_id": str, "attribute": str, "kind": str})
    else:
        constraints_df = pd.DataFrame(columns=CONSTRAINT_COLUMNS)

    constraint_map = _build_constraint_map(constraints_df)
    language_columns = _language_columns(programs_df.columns)

    programs = []
    for row in programs_df.to_dict(orient="records"):
        program_id = str(row["program_id"]).strip()
        scope = (row.get("scope") or NATIONAL).strip().lower()
        regions = tuple(
            slugify(region) for region in (row.get("regions") or "").split(LIST_SEPARATOR) if region.strip()
        )
        programs.append(
            Program(
                program_id=program_id,
                name={lang: row[column] for lang, column in language_columns["name"] if row.get(column)},
                scope=REGIONAL if scope == REGIONAL else NATIONAL,
                regions=regions,
                constraints=tuple(constraint_map.get(program_id, [])),
                description={
                    lang: row[column] for lang, column in language_columns["description"] if row.get(column)
                },
                benefits=row.get("benefits", ""),
                process=row.get("process", ""),
            )
        )
    return ProgramCatalog(programs)


def _build_constraint_map(constraints_df: pd.DataFrame) -> Dict[str, List[EligibilityConstraint]]:
    """
    Build mapping of program id → constraints in file order.

    Inputs:
        constraints_df: DataFrame with `program_id`, `attribute`, `kind` and the kind-specific columns.

    Outputs:
        Dict where keys are program ids and values are constraint lists.
    """

    constraint_map: Dict[str, List[EligibilityConstraint]] = {}
    if constraints_df.empty:
        return constraint_map

    grouped = constraints_df.groupby("program_id", sort=False)
    for program_id, group in grouped:
        records = group.to_dict(orient="records")
        constraint_map[str(program_id)] = [
            build_constraint({key: (None if _is_missing(value) else value) for key, value in record.items()})
            for record in records
        ]
    return constraint_map


def _language_columns(columns: Iterable[str]) -> Dict[str, List[Tuple[str, str]]]:
    mapping: Dict[str, List[Tuple[str, str]]] = {"name": [], "description": []}
    for column in columns:
        for prefix in mapping:
            if column.startswith(f"{prefix}_"):
                mapping[prefix].append((column[len(prefix) + 1 :], column))
    return mapping


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _optional_number(value: Any) -> Optional[float]:
    if _is_missing(value):
        return None
    number = float(value)
    return int(number) if number.is_integer() else number
