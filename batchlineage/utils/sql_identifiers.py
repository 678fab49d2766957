"""Identifier validation for generated DDL.

Values are always bound as parameters, but schema, table and column names
(and cast target types) have to be interpolated into DDL text. Every such
identifier passes through this module first: it is checked against a strict
allow-list and then quoted with the dialect's identifier preparer.
"""

import re

from sqlalchemy.engine import Connection, Engine

# Postgres truncates identifiers at 63 bytes
_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

# Column names may start with a digit ("2nd_dose"); they are only used quoted
_COLUMN_RE = re.compile(r"^[a-z0-9_]{1,63}$")

# e.g. INTEGER, NUMERIC(10,2), TIMESTAMP WITHOUT TIME ZONE, VARCHAR(255)
_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*( [A-Za-z][A-Za-z0-9_]*){0,3}(\(\d{1,4}(, ?\d{1,4})?\))?$")


class UnsafeIdentifierError(ValueError):
    """Raised when a name cannot be safely interpolated into DDL."""


def validate_identifier(name: str) -> str:
    """Return ``name`` unchanged if it is a safe lowercase SQL identifier.

    Raises:
        UnsafeIdentifierError: If the name is empty, too long, or contains
            anything other than lowercase letters, digits and underscores.
    """
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise UnsafeIdentifierError(f"Unsafe SQL identifier: {name!r}")
    return name


def validate_column_name(name: str) -> str:
    """Return ``name`` unchanged if it is a safe lowercase column name.

    Like :func:`validate_identifier` but also accepts a leading digit;
    column names only ever reach SQL through :func:`quote_column`.
    """
    if not isinstance(name, str) or not _COLUMN_RE.match(name):
        raise UnsafeIdentifierError(f"Unsafe SQL column name: {name!r}")
    return name


def validate_type_name(type_name: str) -> str:
    """Return a whitespace-normalized SQL type name or raise."""
    if not isinstance(type_name, str):
        raise UnsafeIdentifierError(f"Unsafe SQL type: {type_name!r}")
    normalized = " ".join(type_name.split())
    if not _TYPE_RE.match(normalized):
        raise UnsafeIdentifierError(f"Unsafe SQL type: {type_name!r}")
    return normalized


def quote_identifier(bind, name: str) -> str:
    """Validate and quote a single identifier for the bind's dialect."""
    dialect = bind.dialect if isinstance(bind, (Engine, Connection)) else bind
    return dialect.identifier_preparer.quote_identifier(validate_identifier(name))


def quote_column(bind, name: str) -> str:
    """Validate and quote a column name for the bind's dialect."""
    dialect = bind.dialect if isinstance(bind, (Engine, Connection)) else bind
    return dialect.identifier_preparer.quote_identifier(validate_column_name(name))


def qualified_name(bind, schema: str, table: str) -> str:
    """Build a validated, quoted ``schema.table`` reference."""
    return f"{quote_identifier(bind, schema)}.{quote_identifier(bind, table)}"
