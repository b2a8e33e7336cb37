"""
Exception types raised while inferring a schema and bulk loading a CSV file
"""

from typing import Optional


class LoaderError(Exception):
    """
    Base class for every loader failure.

    rows_loaded is filled in by the load pass when the error escapes it, so the
    caller can report how many rows were already committed.
    """

    def __init__(self, message: str, rows_loaded: Optional[int] = None):
        super().__init__(message)
        self.rows_loaded = rows_loaded


class ConfigError(LoaderError, ValueError):
    """Invalid configuration value or missing target table"""


class ParseError(LoaderError):
    """Malformed row coming out of the row source"""

    def __init__(self, message: str, line_number: Optional[int] = None):
        if line_number is not None:
            message = f"Line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


class SchemaError(LoaderError):
    """Row does not have the number of columns the schema expects"""

    def __init__(self, message: str, row_index: Optional[int] = None):
        if row_index is not None:
            message = f"Row {row_index}: {message}"
        super().__init__(message)
        self.row_index = row_index


class FieldCountError(SchemaError):
    """Row handed to the encoder has the wrong number of fields"""


class InvalidIdentifierError(LoaderError, ValueError):
    """Table or schema name rejected by validate_identifier"""

    def __init__(self, message: str, rule: str):
        super().__init__(message)
        self.rule = rule


class EmptyInputError(LoaderError):
    """No rows were available for schema inference"""


class TransferError(LoaderError):
    """Sink failed to accept a batch. This is the only retried error."""


class BatchExhaustedError(LoaderError):
    """A batch kept failing after every retry was used"""

    def __init__(self, retries: int, message: str, rows_loaded: Optional[int] = None):
        super().__init__(
            f"Batch processing failed after {retries} retries: {message}",
            rows_loaded=rows_loaded,
        )
        self.retries = retries
        self.attempts = retries + 1
        self.last_error = message


class LoadCancelledError(LoaderError):
    """Load stopped between batches because cancellation was requested"""


class DatabaseError(LoaderError):
    """Connecting to PostgreSQL or running DDL against it failed"""
