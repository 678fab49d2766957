"""Canonical name normalization.

Anything that matches names (file headers against dictionary source
columns, type decisions against raw columns) goes through these functions.
"""

import re
from typing import Any

_UNIT_REWRITES = [
    ("(y/n)", "yn"),
    ("(minutes)", "minutes"),
    ("(min)", "min"),
    ("(cm)", "cm"),
    ("(kg)", "kg"),
]

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_REPEATED_UNDERSCORE_RE = re.compile(r"_+")


def normalize_name(value: Any) -> str:
    """Normalize a column name.

    Case-folds and trims, rewrites common unit suffixes, then collapses any
    run of characters outside ``[a-z0-9]`` to a single underscore.

    >>> normalize_name(" Patient ID ")
    'patient_id'
    >>> normalize_name("Weight (kg)")
    'weight_kg'
    """
    name = str(value).casefold().strip()
    for unit, replacement in _UNIT_REWRITES:
        name = name.replace(unit, replacement)
    name = _NON_ALNUM_RE.sub("_", name)
    return _REPEATED_UNDERSCORE_RE.sub("_", name).strip("_")


def normalize_key(value: Any) -> str:
    """Normalize a source type or table name: trimmed and case-folded."""
    return str(value).strip().casefold()
