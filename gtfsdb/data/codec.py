"""
Value codec for bulk statements.

Field values are inlined into multi-row INSERT statements, so every value
is checked for valid UTF-8 and quoted here before it reaches the store.
"""

from typing import List, Sequence

from gtfsdb.errors import EncodingError

# SQLite rejects a VALUES list longer than SQLITE_MAX_COMPOUND_SELECT.
MAX_COMPOUND_ROWS = 500


def check_text(value: str) -> str:
    """Return value unchanged, or raise EncodingError if it cannot be stored as UTF-8 text."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise EncodingError(f"invalid utf8 in value {value!r}") from e
    if "\x00" in value:
        raise EncodingError(f"NUL character in value {value!r}")
    return value


def quote_identifier(name: str) -> str:
    return '"' + check_text(name).replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + check_text(value).replace("'", "''") + "'"


def encode_row(values: Sequence[str]) -> str:
    return "(" + ", ".join(quote_literal(v) for v in values) + ")"


def build_create_table(table: str, header: Sequence[str]) -> str:
    columns = ", ".join(f"{quote_identifier(h)} text" for h in header)
    return f"CREATE TABLE {quote_identifier(table)} ({columns});"


def build_insert(table: str, header: Sequence[str], rows: List[Sequence[str]]) -> str:
    """
    Encode a batch of rows into one multi-row INSERT statement.

    Args:
        table: Destination table name
        header: Column names, in table order
        rows: Rows already padded to len(header)

    Returns:
        Statement text with every value quoted as a string literal
    """
    if not rows:
        raise ValueError("cannot build an insert for an empty batch")
    if len(rows) > MAX_COMPOUND_ROWS:
        raise ValueError(f"batch of {len(rows)} rows exceeds {MAX_COMPOUND_ROWS}")

    columns = ", ".join(quote_identifier(h) for h in header)
    values = ", ".join(encode_row(row) for row in rows)
    return f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES {values};"
