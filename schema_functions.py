"""
Schema inference: column profiling over a bounded sample of rows
"""

from dataclasses import dataclass, field
from itertools import islice
from typing import Iterable, List, Optional, Sequence

import pandas as pd

from loader_errors import EmptyInputError, InvalidIdentifierError, SchemaError
from sql_types import SqlType, infer_type, merge_types


DEFAULT_SAMPLE_SIZE = 1000

RESERVED_WORDS = frozenset(
    {"SELECT", "INSERT", "UPDATE", "DELETE", "DROP", "CREATE", "ALTER", "EXEC"}
)

CONFIDENCE_WEIGHTS = {
    SqlType.TEXT: 0.6,  # Could be anything
    SqlType.NULL: 0.3,  # Only seen before finalize()
}


@dataclass
class ColumnProfile:
    name: str
    sql_type: SqlType = SqlType.NULL
    sample_count: int = 0
    null_count: int = 0
    nullable: bool = True

    def observe(self, value: str) -> None:
        """Fold one sampled value into the running type and counters"""
        self.sample_count += 1
        value_type = infer_type(value)
        if value_type is SqlType.NULL:
            self.null_count += 1
        self.sql_type = merge_types(self.sql_type, value_type)

    def finalize(self) -> None:
        """All-null columns default to TEXT; nullable if any null was seen"""
        if self.sql_type is SqlType.NULL:
            self.sql_type = SqlType.TEXT
        self.nullable = self.null_count > 0

    def confidence(self) -> float:
        """
        Advisory score between 0.0 and 1.0.

        Drops with the share of nulls in the sample, and is further weighted
        down for TEXT, which is the fallback type.
        """
        if self.sample_count == 0:
            return 0.0
        non_null_ratio = 1.0 - (self.null_count / self.sample_count)
        return non_null_ratio * CONFIDENCE_WEIGHTS.get(self.sql_type, 1.0)


@dataclass
class TableSchema:
    table_name: str
    columns: List[ColumnProfile] = field(default_factory=list)

    @classmethod
    def from_column_names(cls, table_name: str, column_names: Sequence[str]) -> "TableSchema":
        return cls(table_name, [ColumnProfile(name) for name in column_names])

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    def observe_row(self, row: Sequence[str], row_index: Optional[int] = None) -> None:
        """
        Update every column with one row of data

        Raises:
            SchemaError: If the row length doesn't match the column count
        """
        if len(row) != len(self.columns):
            raise SchemaError(
                f"Row has {len(row)} columns but schema expects {len(self.columns)}",
                row_index=row_index,
            )
        for column, value in zip(self.columns, row):
            column.observe(value)

    def finalize(self) -> None:
        for column in self.columns:
            column.finalize()


def validate_identifier(name: str, kind: str = "Table name") -> str:
    """
    Validate a table or schema name before it is used in any SQL

    Rules:
        - not empty
        - starts with a letter or underscore
        - only letters, digits and underscores
        - not one of RESERVED_WORDS (case-insensitive)

    Raises:
        InvalidIdentifierError: With .rule set to the rule that failed
    """
    if not name:
        raise InvalidIdentifierError(f"{kind} cannot be empty", rule="empty")

    if not (name[0].isalpha() or name[0] == "_"):
        raise InvalidIdentifierError(
            f"{kind} must start with letter or underscore: {name}",
            rule="first_character",
        )

    if not all(c.isalnum() or c == "_" for c in name):
        raise InvalidIdentifierError(
            f"{kind} contains invalid characters: {name}", rule="characters"
        )

    if name.upper() in RESERVED_WORDS:
        raise InvalidIdentifierError(
            f"{kind} cannot be SQL keyword: {name}", rule="reserved_word"
        )

    return name


def infer_schema(
    rows: Iterable[Sequence[str]],
    column_names: Sequence[str],
    table_name: str,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> TableSchema:
    """
    Infer column types from the first sample_size rows

    Args:
        rows: Row iterable from a fresh pass over the source. Only the sample is
              consumed; the load pass must open its own pass.
        column_names: Header of the source, in positional order
        table_name: Target table, validated before any row is read
        sample_size: Maximum number of rows to observe

    Returns:
        Finalized TableSchema

    Raises:
        InvalidIdentifierError: Bad table name
        SchemaError: A sampled row has the wrong number of columns
        EmptyInputError: The source had no rows
    """
    validate_identifier(table_name)
    schema = TableSchema.from_column_names(table_name, column_names)

    observed = 0
    for row_index, row in enumerate(islice(rows, sample_size), start=1):
        schema.observe_row(row, row_index=row_index)
        observed = row_index

    if observed == 0:
        raise EmptyInputError("No rows to infer a schema from")

    schema.finalize()
    return schema


def create_table_sql(schema: TableSchema, db_schema: Optional[str] = None) -> str:
    """Generate a CREATE TABLE statement for the inferred schema"""
    qualified_name = f"{db_schema}.{schema.table_name}" if db_schema else schema.table_name

    column_defs = []
    for column in schema.columns:
        quoted_name = '"' + column.name.replace('"', '""') + '"'
        not_null = "" if column.nullable else " NOT NULL"
        column_defs.append(f"    {quoted_name} {column.sql_type.to_sql()}{not_null}")

    columns_sql = ",\n".join(column_defs)
    return f"CREATE TABLE {qualified_name} (\n{columns_sql}\n)"


def schema_to_dataframe(schema: TableSchema) -> pd.DataFrame:
    """One row per column with the inferred type and sample statistics"""
    return pd.DataFrame(
        {
            "column": [c.name for c in schema.columns],
            "type": [c.sql_type.to_sql() for c in schema.columns],
            "nullable": [c.nullable for c in schema.columns],
            "confidence": [round(c.confidence(), 4) for c in schema.columns],
            "samples": [c.sample_count for c in schema.columns],
            "nulls": [c.null_count for c in schema.columns],
        },
        columns=["column", "type", "nullable", "confidence", "samples", "nulls"],
    )
