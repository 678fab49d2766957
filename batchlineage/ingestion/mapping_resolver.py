"""Mapping dictionary resolution for incoming files.

Resolves a file name to a lake table and a column rename plan using the
ingest dictionary. Resolution is always scoped to a single source type:
rules belonging to another source type are filtered out before any matching
happens, so a file can never be routed into another source's tables.

Resolution order inside the partition:

1. exact match of the file's base name against declared source table names;
2. wildcard patterns (``labs_*``), where a four-digit year captured by the
   wildcard becomes a derived column;
3. otherwise the file is unresolved.

Matches within one tier that point at more than one lake table are treated
as ambiguous and rejected.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy.engine import Engine

from batchlineage.utils.naming import normalize_key, normalize_name
from batchlineage.utils.postgres_client import fetch_dataframe
from batchlineage.utils.sql_identifiers import qualified_name

log = logging.getLogger(__name__)

DICTIONARY_COLUMNS = [
    "source_type",
    "source_table_name_or_pattern",
    "source_column",
    "lake_table",
    "lake_column",
    "is_wildcard",
]

# Column names used by older dictionary extracts
_DICTIONARY_ALIASES = {
    "source_table_name": "source_table_name_or_pattern",
    "source_table_pattern": "source_table_name_or_pattern",
    "source_variable_name": "source_column",
    "lake_table_name": "lake_table",
    "lake_variable_name": "lake_column",
}

_YEAR_RE = re.compile(r"^\d{4}$")
_TRUE_STRINGS = {"true", "t", "1", "y", "yes"}


class MappingResolutionError(Exception):
    """Raised when a file cannot be resolved to a lake table."""


class UnknownSourceTypeError(MappingResolutionError):
    """The dictionary holds no rules for the requested source type."""


class UnresolvedMappingError(MappingResolutionError):
    """No rule in the source type's partition matches the file name."""


class AmbiguousMappingError(MappingResolutionError):
    """Several rules match the file name but disagree on the lake table."""


def file_base_name(file_path: str) -> str:
    """Return the normalized file name without directory and extension."""
    base, _ = os.path.splitext(os.path.basename(file_path))
    return normalize_key(base)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().casefold() in _TRUE_STRINGS
    if value is None or pd.isna(value):
        return False
    return bool(value)


def _is_blank(value: Any) -> bool:
    return value is None or (not isinstance(value, str) and pd.isna(value)) or str(value).strip() == ""


@dataclass(frozen=True)
class MappingRule:
    """One row of the ingest dictionary."""

    source_type: str
    source_table_name_or_pattern: str
    source_column: Optional[str]
    lake_table: str
    lake_column: Optional[str]
    is_wildcard: bool = False

    def pattern_regex(self) -> "re.Pattern":
        pattern = self.source_table_name_or_pattern
        if "*" not in pattern:
            pattern += "*"
        parts = [re.escape(part) for part in pattern.split("*")]
        return re.compile("^" + "(.+)".join(parts) + "$")

    def match_exact(self, base_name: str) -> bool:
        return not self.is_wildcard and self.source_table_name_or_pattern == base_name

    def match_pattern(self, base_name: str) -> Optional[Tuple[str, ...]]:
        """Return the captured wildcard segments, or None if no match."""
        if not self.is_wildcard:
            return None
        match = self.pattern_regex().match(base_name)
        return match.groups() if match else None


@dataclass
class TableResolution:
    """Outcome of resolving one file against the dictionary."""

    lake_table: str
    matched_on: str
    is_wildcard: bool
    column_map: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    derived_values: Dict[str, str] = field(default_factory=dict)

    @property
    def lake_columns(self) -> List[str]:
        return [lake for lake, _ in self.column_map]


def coerce_dictionary(df: pd.DataFrame) -> pd.DataFrame:
    """Normalize a raw dictionary extract to the canonical column set.

    Older extracts use ``source_table_name``/``lake_variable_name`` style
    headers; those are renamed. Keys are trimmed and case-folded, column
    names go through :func:`normalize_name`, and a rule containing ``*`` is
    a wildcard even if its flag is blank.
    """
    frame = df.rename(columns=lambda c: normalize_name(c))
    frame = frame.rename(columns={k: v for k, v in _DICTIONARY_ALIASES.items() if v not in frame.columns})

    missing = [c for c in DICTIONARY_COLUMNS if c not in frame.columns and c != "is_wildcard"]
    if missing:
        raise MappingResolutionError(f"Ingest dictionary is missing columns: {', '.join(missing)}")

    if "is_wildcard" not in frame.columns:
        frame["is_wildcard"] = False

    frame = frame[DICTIONARY_COLUMNS].copy()
    frame = frame[~frame["source_type"].map(_is_blank) & ~frame["lake_table"].map(_is_blank)]
    frame = frame[~frame["source_table_name_or_pattern"].map(_is_blank)].copy()

    frame["source_type"] = frame["source_type"].map(normalize_key)
    frame["source_table_name_or_pattern"] = frame["source_table_name_or_pattern"].map(normalize_key)
    frame["lake_table"] = frame["lake_table"].map(normalize_key)
    for col in ("source_column", "lake_column"):
        frame[col] = frame[col].map(lambda v: None if _is_blank(v) else normalize_name(v))
    frame["is_wildcard"] = [
        _as_bool(flag) or "*" in pattern
        for flag, pattern in zip(frame["is_wildcard"], frame["source_table_name_or_pattern"])
    ]
    return frame.reset_index(drop=True)


def load_ingest_dictionary(engine: Engine, schema: str = "reference", table: str = "ingest_dictionary") -> pd.DataFrame:
    """Read the ingest dictionary from the reference schema.

    Args:
        engine: SQLAlchemy engine.
        schema: Schema holding the dictionary.
        table: Dictionary table name.

    Returns:
        Coerced dictionary DataFrame (see :func:`coerce_dictionary`).
    """
    df = fetch_dataframe(engine, f"SELECT * FROM {qualified_name(engine, schema, table)}")
    dictionary = coerce_dictionary(df)
    log.info("Loaded ingest dictionary %s.%s: %d rules, %d source types",
             schema, table, len(dictionary), dictionary["source_type"].nunique())
    return dictionary


def rules_for_source_type(dictionary: pd.DataFrame, source_type: str) -> List[MappingRule]:
    """Return the rules of one source type partition, in dictionary order.

    Raises:
        UnknownSourceTypeError: If the partition is empty.
    """
    key = normalize_key(source_type)
    subset = dictionary[dictionary["source_type"] == key]
    if subset.empty:
        raise UnknownSourceTypeError(f"no mapping for source type '{key}'")
    return [
        MappingRule(
            source_type=row.source_type,
            source_table_name_or_pattern=row.source_table_name_or_pattern,
            source_column=None if _is_blank(row.source_column) else row.source_column,
            lake_table=row.lake_table,
            lake_column=None if _is_blank(row.lake_column) else row.lake_column,
            is_wildcard=bool(row.is_wildcard),
        )
        for row in subset.itertuples(index=False)
    ]


def _single_lake_table(base_name: str, matched: List[MappingRule], tier: str) -> str:
    tables = sorted({rule.lake_table for rule in matched})
    if len(tables) > 1:
        raise AmbiguousMappingError(
            f"ambiguous {tier} mapping for '{base_name}': {', '.join(tables)}"
        )
    return tables[0]


def _column_map(rules: List[MappingRule]) -> List[Tuple[str, Optional[str]]]:
    plan: List[Tuple[str, Optional[str]]] = []
    seen = set()
    for rule in rules:
        if not rule.lake_column or rule.lake_column in seen:
            continue
        seen.add(rule.lake_column)
        plan.append((rule.lake_column, rule.source_column))
    return plan


def resolve_lake_table(
    dictionary: pd.DataFrame,
    source_type: str,
    file_name: str,
    derived_year_column: str = "file_year",
) -> TableResolution:
    """Resolve a file to its lake table within one source type partition.

    Args:
        dictionary: Coerced ingest dictionary.
        source_type: Source type of the batch.
        file_name: File name or path; only the base name is used.
        derived_year_column: Column receiving a year parsed from a wildcard.

    Returns:
        TableResolution with the lake table and rename plan.

    Raises:
        UnknownSourceTypeError: No rules exist for the source type.
        UnresolvedMappingError: No rule matches the file name.
        AmbiguousMappingError: Matching rules disagree on the lake table.
    """
    rules = rules_for_source_type(dictionary, source_type)
    base_name = file_base_name(file_name)

    exact = [rule for rule in rules if rule.match_exact(base_name)]
    if exact:
        lake_table = _single_lake_table(base_name, exact, "exact")
        log.debug("Resolved '%s' exactly to lake table '%s'", base_name, lake_table)
        return TableResolution(
            lake_table=lake_table,
            matched_on=base_name,
            is_wildcard=False,
            column_map=_column_map(exact),
        )

    captures: Dict[MappingRule, Tuple[str, ...]] = {}
    for rule in rules:
        groups = rule.match_pattern(base_name)
        if groups is not None:
            captures[rule] = groups

    if not captures:
        raise UnresolvedMappingError(
            f"no rule matches '{base_name}' under source type '{normalize_key(source_type)}'"
        )

    matched = list(captures)
    lake_table = _single_lake_table(base_name, matched, "pattern")
    first = matched[0]

    derived: Dict[str, str] = {}
    segment = captures[first][0] if captures[first] else ""
    if _YEAR_RE.match(segment):
        derived[derived_year_column] = segment

    log.debug("Resolved '%s' by pattern '%s' to lake table '%s'",
              base_name, first.source_table_name_or_pattern, lake_table)
    return TableResolution(
        lake_table=lake_table,
        matched_on=first.source_table_name_or_pattern,
        is_wildcard=True,
        column_map=_column_map(matched),
        derived_values=derived,
    )
