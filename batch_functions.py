"""
Batched bulk loading: batching, COPY payload encoding and retry with backoff
"""

import sys
import time
from dataclasses import dataclass
from itertools import islice
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

from loader_errors import (
    BatchExhaustedError,
    ConfigError,
    FieldCountError,
    LoadCancelledError,
    LoaderError,
    TransferError,
)
from schema_functions import DEFAULT_SAMPLE_SIZE, TableSchema


Row = List[str]
Batch = List[Row]

# sink(table_name, column_names, payload) -> rows accepted
Sink = Callable[[str, List[str], str], int]


@dataclass
class LoadConfig:
    sample_size: int = DEFAULT_SAMPLE_SIZE
    batch_size: int = 10_000
    max_retries: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 60.0


def validate_config(config: LoadConfig) -> LoadConfig:
    """
    Raises:
        ConfigError: If any value is out of range
    """
    if config.sample_size <= 0:
        raise ConfigError(f"sample_size must be positive, got {config.sample_size}")
    if config.batch_size <= 0:
        raise ConfigError(f"batch_size must be positive, got {config.batch_size}")
    if config.max_retries < 0:
        raise ConfigError(f"max_retries cannot be negative, got {config.max_retries}")
    if config.initial_backoff <= 0:
        raise ConfigError(
            f"initial_backoff must be positive, got {config.initial_backoff}"
        )
    if config.max_backoff < config.initial_backoff:
        raise ConfigError(
            f"max_backoff ({config.max_backoff}) cannot be less than "
            f"initial_backoff ({config.initial_backoff})"
        )
    return config


# Batching


def iter_batches(rows: Iterable[Row], batch_size: int) -> Iterator[Batch]:
    """
    Group rows into lists of at most batch_size rows

    An error raised by the row iterator propagates immediately; rows already
    collected for the current batch are dropped, never emitted as a partial
    batch.
    """
    if batch_size <= 0:
        raise ConfigError(f"batch_size must be positive, got {batch_size}")

    iterator = iter(rows)
    while True:
        batch = list(islice(iterator, batch_size))
        if not batch:
            return
        yield batch


# Encoding


def encode_field(value: str) -> str:
    """
    Encode one field for COPY ... WITH (FORMAT csv, NULL '')

    Only an empty value becomes the empty token, which COPY reads as NULL.
    Text such as "NULL" or "\\N" is sent as is. Fields containing a comma,
    double quote or line break are quoted with inner quotes doubled.
    """
    if value == "":
        return ""
    if "," in value or '"' in value or "\n" in value or "\r" in value:
        return '"' + value.replace('"', '""') + '"'
    return value


def encode_batch(batch: Sequence[Sequence[str]], column_count: int, first_row_index: int = 1) -> str:
    """
    Serialize a batch as CSV text for the COPY protocol

    Args:
        batch: Rows of string fields
        column_count: Number of columns in the target schema
        first_row_index: Index of the first row in the whole input, for errors

    Raises:
        FieldCountError: If any row doesn't have column_count fields
    """
    lines = []
    for offset, row in enumerate(batch):
        if len(row) != column_count:
            raise FieldCountError(
                f"Row has {len(row)} columns but expected {column_count}",
                row_index=first_row_index + offset,
            )
        lines.append(",".join(encode_field(value) for value in row))
        lines.append("\n")
    return "".join(lines)


# Retry


def print_retry_warning(attempt: int, max_attempts: int, delay: float, error: Exception) -> None:
    print(
        f"Batch failed (attempt {attempt}/{max_attempts}): {error}. "
        f"Retrying in {delay:.1f}s...",
        file=sys.stderr,
    )


def load_batch_with_retry(
    sink: Sink,
    table_name: str,
    column_names: List[str],
    batch: Batch,
    max_retries: int = 3,
    initial_backoff: float = 1.0,
    max_backoff: float = 60.0,
    first_row_index: int = 1,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, int, float, Exception], None]] = print_retry_warning,
) -> int:
    """
    Send one batch to the sink, retrying TransferError with exponential backoff

    The batch is encoded once and the same payload is resent on every attempt.
    After a failed attempt the loader sleeps, then doubles the delay up to
    max_backoff. Once max_retries retries have failed the batch is given up.

    Args:
        sink: Callable taking (table_name, column_names, payload), returning the
              accepted row count and raising TransferError on failure
        on_retry: Called as on_retry(attempt, max_attempts, delay, error) before
                  each backoff sleep. None disables it.

    Returns:
        Number of rows the sink accepted

    Raises:
        BatchExhaustedError: After max_retries + 1 failed attempts
        FieldCountError: If a row has the wrong number of fields (not retried)
    """
    payload = encode_batch(batch, len(column_names), first_row_index=first_row_index)

    retries = 0
    backoff = initial_backoff
    while True:
        try:
            return sink(table_name, column_names, payload)
        except TransferError as e:
            if retries >= max_retries:
                raise BatchExhaustedError(retries, str(e)) from e

            if on_retry:
                on_retry(retries + 1, max_retries + 1, backoff, e)
            sleep(backoff)

            retries += 1
            backoff = min(backoff * 2, max_backoff)


def print_batch_progress(batch_number: int, batch_rows: int, total_rows: int) -> None:
    print(f"Loaded batch {batch_number} ({batch_rows} rows, {total_rows} total)")


def load_rows(
    rows: Iterable[Row],
    schema: TableSchema,
    sink: Sink,
    config: Optional[LoadConfig] = None,
    cancel_event=None,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, int, float, Exception], None]] = print_retry_warning,
    on_batch: Optional[Callable[[int, int, int], None]] = print_batch_progress,
) -> int:
    """
    Load every row into schema.table_name, one batch at a time

    Batches are sent strictly in order and never overlap. cancel_event (a
    threading.Event or anything with is_set()) is checked between batches only.

    Returns:
        Total rows accepted by the sink

    Raises:
        LoaderError: Any fatal error, with rows_loaded set to the rows already
                     accepted before the failure
    """
    config = validate_config(config or LoadConfig())
    column_names = schema.column_names

    total_rows = 0
    next_row_index = 1
    try:
        for batch_number, batch in enumerate(iter_batches(rows, config.batch_size), start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise LoadCancelledError(
                    f"Load cancelled before batch {batch_number}"
                )

            accepted = load_batch_with_retry(
                sink,
                schema.table_name,
                column_names,
                batch,
                max_retries=config.max_retries,
                initial_backoff=config.initial_backoff,
                max_backoff=config.max_backoff,
                first_row_index=next_row_index,
                sleep=sleep,
                on_retry=on_retry,
            )
            total_rows += accepted
            next_row_index += len(batch)

            if on_batch:
                on_batch(batch_number, len(batch), total_rows)
    except LoaderError as e:
        e.rows_loaded = total_rows
        raise

    return total_rows
