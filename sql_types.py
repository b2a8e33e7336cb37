"""
SQL type lattice used for schema inference

Every raw CSV value maps to one SqlType, and two types merge into the least
general type that can hold both. Columns are typed by folding merge_types over
the values seen in the sample.
"""

import re
from datetime import datetime
from enum import Enum
from itertools import product
from typing import Dict, Tuple

import numpy as np


class SqlType(Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    SMALLINT = "smallint"
    INTEGER = "integer"
    BIGINT = "bigint"
    REAL = "real"
    DOUBLE = "double"
    TIMESTAMP = "timestamp"
    DATE = "date"
    TEXT = "text"

    def to_sql(self) -> str:
        """PostgreSQL type name used in CREATE TABLE"""
        return POSTGRES_TYPE_NAMES[self]

    def __str__(self) -> str:
        return self.to_sql()


POSTGRES_TYPE_NAMES = {
    SqlType.NULL: "TEXT",  # All-null columns are created as TEXT
    SqlType.BOOLEAN: "BOOLEAN",
    SqlType.SMALLINT: "SMALLINT",
    SqlType.INTEGER: "INTEGER",
    SqlType.BIGINT: "BIGINT",
    SqlType.REAL: "REAL",
    SqlType.DOUBLE: "DOUBLE PRECISION",
    SqlType.TIMESTAMP: "TIMESTAMP",
    SqlType.DATE: "DATE",
    SqlType.TEXT: "TEXT",
}

INTEGER_TYPES = frozenset({SqlType.SMALLINT, SqlType.INTEGER, SqlType.BIGINT})
FLOAT_TYPES = frozenset({SqlType.REAL, SqlType.DOUBLE})
NUMERIC_TYPES = INTEGER_TYPES | FLOAT_TYPES
TEMPORAL_TYPES = frozenset({SqlType.DATE, SqlType.TIMESTAMP})

# Narrowest first, checked in this order
INTEGER_RANGES = [
    (SqlType.SMALLINT, np.iinfo(np.int16)),
    (SqlType.INTEGER, np.iinfo(np.int32)),
    (SqlType.BIGINT, np.iinfo(np.int64)),
]

TIMESTAMP_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y/%m/%d %H:%M:%S",
    "%d-%m-%Y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
]

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d-%m-%Y",
    "%m/%d/%Y",
    "%d/%m/%Y",
]

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")
_FLOAT_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


def is_null_value(value: str) -> bool:
    """Empty string, any casing of 'null', or the COPY text null marker \\N"""
    return value == "" or value.lower() == "null" or value == "\\N"


def _matches_any_format(value: str, formats) -> bool:
    for fmt in formats:
        try:
            datetime.strptime(value, fmt)
            return True
        except ValueError:
            continue
    return False


def is_timestamp(value: str) -> bool:
    return _matches_any_format(value, TIMESTAMP_FORMATS)


def is_date(value: str) -> bool:
    return _matches_any_format(value, DATE_FORMATS)


def _infer_integer_type(value: str):
    if not _INTEGER_RE.fullmatch(value):
        return None
    number = int(value)
    for sql_type, bounds in INTEGER_RANGES:
        if bounds.min <= number <= bounds.max:
            return sql_type
    return None


def _infer_float_type(value: str):
    if not _FLOAT_RE.fullmatch(value):
        return None
    number = float(value)
    if not np.isfinite(number):
        return None
    # float32 overflows to inf instead of raising
    with np.errstate(over="ignore"):
        if np.isfinite(np.float32(number)):
            return SqlType.REAL
    return SqlType.DOUBLE


def infer_type(value: str) -> SqlType:
    """
    Infer the narrowest SqlType for a single raw value.

    Candidates are tried in a fixed order: null, boolean, 16/32/64-bit
    integers, 32/64-bit floats, timestamps, dates. The first match wins and
    anything unmatched is TEXT.

    Examples:
        "" -> NULL
        "true" -> BOOLEAN
        "42" -> SMALLINT
        "32768" -> INTEGER
        "3.14" -> REAL
        "2024-01-15 10:30:00" -> TIMESTAMP
        "2024/01/15" -> DATE
        "abc123" -> TEXT
    """
    if is_null_value(value):
        return SqlType.NULL

    if value in ("true", "false"):
        return SqlType.BOOLEAN

    integer_type = _infer_integer_type(value)
    if integer_type is not None:
        return integer_type

    float_type = _infer_float_type(value)
    if float_type is not None:
        return float_type

    if is_timestamp(value):
        return SqlType.TIMESTAMP

    if is_date(value):
        return SqlType.DATE

    return SqlType.TEXT


def _merge_rule(a: SqlType, b: SqlType) -> SqlType:
    """Pairwise promotion rules, checked top to bottom"""
    if SqlType.TEXT in (a, b):
        return SqlType.TEXT
    if a is SqlType.NULL:
        return b
    if b is SqlType.NULL:
        return a
    if a is b:
        return a

    pair = {a, b}
    if pair <= INTEGER_TYPES:
        return SqlType.BIGINT if SqlType.BIGINT in pair else SqlType.INTEGER
    # int + float goes straight to DOUBLE even when REAL would fit
    if pair & INTEGER_TYPES and pair & FLOAT_TYPES:
        return SqlType.DOUBLE
    if pair == FLOAT_TYPES:
        return SqlType.DOUBLE
    if pair == TEMPORAL_TYPES:
        return SqlType.TIMESTAMP
    if SqlType.BOOLEAN in pair:
        return SqlType.TEXT
    if pair & TEMPORAL_TYPES and pair & NUMERIC_TYPES:
        return SqlType.TEXT
    return SqlType.TEXT


MERGE_TABLE: Dict[Tuple[SqlType, SqlType], SqlType] = {
    (a, b): _merge_rule(a, b) for a, b in product(SqlType, repeat=2)
}


def merge_types(a: SqlType, b: SqlType) -> SqlType:
    """Least general type that can hold values of both a and b"""
    return MERGE_TABLE[(a, b)]
