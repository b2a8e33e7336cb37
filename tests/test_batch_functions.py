"""
Tests for batch_functions.py

Tests cover:
- Configuration defaults and validation
- iter_batches partitioning and error propagation
- COPY payload encoding and quoting
- load_batch_with_retry backoff schedule and exhaustion
- load_rows sequencing, cancellation and partial row counts

No database is needed: sinks are plain callables recording what they receive.
"""

import csv
import io
import math
import threading
from unittest.mock import Mock

import pytest

from batch_functions import (
    LoadConfig,
    encode_batch,
    encode_field,
    iter_batches,
    load_batch_with_retry,
    load_rows,
    print_retry_warning,
    validate_config,
)
from loader_errors import (
    BatchExhaustedError,
    ConfigError,
    FieldCountError,
    LoadCancelledError,
    ParseError,
    TransferError,
)
from schema_functions import TableSchema


# ===== TEST HELPERS =====


class FlakySink:
    """Sink that raises TransferError for the first `failures` calls"""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = []

    def __call__(self, table_name, column_names, payload):
        self.calls.append((table_name, list(column_names), payload))
        if len(self.calls) <= self.failures:
            raise TransferError(f"connection reset (call {len(self.calls)})")
        return payload.count("\n")


def make_rows(count: int):
    return [[str(i), f"name_{i}"] for i in range(count)]


@pytest.fixture
def schema():
    return TableSchema.from_column_names("users", ["id", "name"])


# ===== CONFIG TESTS =====


class TestLoadConfig:
    """Test configuration defaults and validation"""

    def test_defaults(self):
        config = LoadConfig()
        assert config.sample_size == 1000
        assert config.batch_size == 10_000
        assert config.max_retries == 3
        assert config.initial_backoff == 1.0
        assert config.max_backoff == 60.0

    def test_valid_config_passes(self):
        config = LoadConfig(max_retries=0)
        assert validate_config(config) is config

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"sample_size": 0},
            {"batch_size": 0},
            {"batch_size": -5},
            {"max_retries": -1},
            {"initial_backoff": 0},
            {"initial_backoff": 5.0, "max_backoff": 1.0},
        ],
    )
    def test_invalid_config(self, kwargs):
        with pytest.raises(ConfigError):
            validate_config(LoadConfig(**kwargs))


# ===== BATCHING TESTS =====


class TestIterBatches:
    """Test grouping rows into batches"""

    @pytest.mark.parametrize("m, n", [(10, 3), (9, 3), (1, 5), (5, 1), (10000, 999)])
    def test_partitions_input_exactly(self, m, n):
        rows = make_rows(m)
        batches = list(iter_batches(rows, n))

        assert len(batches) == math.ceil(m / n)
        assert all(len(b) == n for b in batches[:-1])
        assert len(batches[-1]) == (m % n or n)
        assert [row for batch in batches for row in batch] == rows

    def test_empty_source(self):
        assert list(iter_batches([], 10)) == []

    def test_is_lazy(self):
        pulled = []

        def rows():
            for i in range(10):
                pulled.append(i)
                yield [str(i)]

        batches = iter_batches(rows(), 4)
        assert pulled == []
        assert len(next(batches)) == 4
        assert len(pulled) == 4

    def test_error_mid_batch_discards_partial_batch(self):
        def rows():
            yield ["1"]
            yield ["2"]
            yield ["3"]
            raise ParseError("bad quote", line_number=5)

        batches = iter_batches(rows(), 2)
        assert next(batches) == [["1"], ["2"]]
        with pytest.raises(ParseError):
            next(batches)
        # The partial batch holding row 3 is never emitted
        assert list(batches) == []

    def test_invalid_batch_size(self):
        with pytest.raises(ConfigError):
            next(iter_batches([["1"]], 0))


# ===== ENCODING TESTS =====


class TestEncodeField:
    """Test single field quoting rules"""

    def test_plain_field(self):
        assert encode_field("Alice") == "Alice"

    def test_empty_field_is_unquoted(self):
        assert encode_field("") == ""

    @pytest.mark.parametrize("value", ["null", "NULL", "\\N"])
    def test_null_like_text_is_sent_as_is(self, value):
        """Only empty fields load as NULL; a TEXT value "NULL" must survive"""
        assert encode_field(value) == value

    def test_comma_and_quote(self):
        assert encode_field('a,b"c') == '"a,b""c"'

    def test_newline(self):
        assert encode_field("line1\nline2") == '"line1\nline2"'
        assert encode_field("line1\r\nline2") == '"line1\r\nline2"'

    def test_quote_only(self):
        assert encode_field('say "hi"') == '"say ""hi"""'

    def test_other_characters_untouched(self):
        assert encode_field("tab\there; semi|pipe") == "tab\there; semi|pipe"


class TestEncodeBatch:
    """Test batch payload encoding"""

    def test_rows_joined_by_newline(self):
        payload = encode_batch([["1", "Alice"], ["2", "Bob"]], 2)
        assert payload == "1,Alice\n2,Bob\n"

    def test_empty_fields(self):
        assert encode_batch([["", "Carol"]], 2) == ",Carol\n"

    def test_round_trip_through_csv_reader(self):
        rows = [["1", 'a,b"c'], ["2", "multi\nline"], ["3", "plain"]]
        payload = encode_batch(rows, 2)

        assert list(csv.reader(io.StringIO(payload, newline=""))) == rows

    def test_field_count_checked_per_row(self):
        with pytest.raises(FieldCountError) as exc_info:
            encode_batch([["1", "Alice"], ["2"]], 2, first_row_index=101)
        assert exc_info.value.row_index == 102

    def test_extra_fields_rejected(self):
        with pytest.raises(FieldCountError):
            encode_batch([["1", "Alice", "extra"]], 2)


# ===== RETRY TESTS =====


class TestLoadBatchWithRetry:
    """Test retry with exponential backoff"""

    def test_success_first_try(self):
        sink = FlakySink()
        sleep = Mock()

        count = load_batch_with_retry(sink, "users", ["id", "name"], make_rows(3), sleep=sleep)

        assert count == 3
        assert len(sink.calls) == 1
        assert sink.calls[0][0] == "users"
        assert sink.calls[0][1] == ["id", "name"]
        sleep.assert_not_called()

    def test_converges_after_two_failures(self):
        sink = FlakySink(failures=2)
        delays = []

        count = load_batch_with_retry(
            sink, "users", ["id", "name"], make_rows(5),
            max_retries=2, initial_backoff=1.0, sleep=delays.append, on_retry=None,
        )

        assert count == 5
        assert len(sink.calls) == 3
        assert delays == [1.0, 2.0]
        assert sum(delays) == 1.0 + 2 * 1.0

    def test_same_payload_resent(self):
        sink = FlakySink(failures=2)
        load_batch_with_retry(
            sink, "users", ["id", "name"], make_rows(2), sleep=lambda s: None, on_retry=None
        )
        payloads = {call[2] for call in sink.calls}
        assert len(payloads) == 1

    def test_exhausted_after_max_retries(self):
        sink = FlakySink(failures=100)
        delays = []

        with pytest.raises(BatchExhaustedError) as exc_info:
            load_batch_with_retry(
                sink, "users", ["id", "name"], make_rows(1),
                max_retries=2, sleep=delays.append, on_retry=None,
            )

        assert len(sink.calls) == 3
        assert exc_info.value.retries == 2
        assert exc_info.value.attempts == 3
        assert "call 3" in exc_info.value.last_error
        assert "after 2 retries" in str(exc_info.value)
        assert delays == [1.0, 2.0]

    def test_zero_retries(self):
        sink = FlakySink(failures=1)
        with pytest.raises(BatchExhaustedError) as exc_info:
            load_batch_with_retry(sink, "users", ["id", "name"], make_rows(1), max_retries=0, sleep=Mock())
        assert exc_info.value.retries == 0
        assert len(sink.calls) == 1

    def test_backoff_capped(self):
        sink = FlakySink(failures=5)
        delays = []

        load_batch_with_retry(
            sink, "users", ["id", "name"], make_rows(1),
            max_retries=5, initial_backoff=1.0, max_backoff=5.0,
            sleep=delays.append, on_retry=None,
        )

        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_on_retry_called_per_retry(self):
        sink = FlakySink(failures=2)
        on_retry = Mock()

        load_batch_with_retry(
            sink, "users", ["id", "name"], make_rows(1),
            max_retries=3, initial_backoff=0.5, sleep=Mock(), on_retry=on_retry,
        )

        assert on_retry.call_count == 2
        first, second = on_retry.call_args_list
        assert first.args[:3] == (1, 4, 0.5)
        assert second.args[:3] == (2, 4, 1.0)
        assert isinstance(first.args[3], TransferError)

    def test_default_warning_goes_to_stderr(self, capsys):
        print_retry_warning(1, 4, 2.0, TransferError("boom"))
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "Batch failed (attempt 1/4): boom. Retrying in 2.0s..." in captured.err

    def test_non_transfer_errors_not_retried(self):
        sink = Mock(side_effect=RuntimeError("bug"))
        with pytest.raises(RuntimeError):
            load_batch_with_retry(sink, "users", ["id", "name"], make_rows(1), sleep=Mock())
        assert sink.call_count == 1

    def test_field_count_error_before_any_attempt(self):
        sink = FlakySink()
        with pytest.raises(FieldCountError):
            load_batch_with_retry(sink, "users", ["id", "name"], [["1"]], sleep=Mock())
        assert sink.calls == []


# ===== LOAD ROWS TESTS =====


class TestLoadRows:
    """Test sequential batch loading"""

    def test_loads_all_rows(self, schema):
        sink = FlakySink()
        on_batch = Mock()

        total = load_rows(
            make_rows(25), schema, sink, config=LoadConfig(batch_size=10), on_batch=on_batch
        )

        assert total == 25
        assert len(sink.calls) == 3
        assert [c.args for c in on_batch.call_args_list] == [(1, 10, 10), (2, 10, 20), (3, 5, 25)]

    def test_batches_sent_in_order(self, schema):
        sink = FlakySink()
        load_rows(make_rows(6), schema, sink, config=LoadConfig(batch_size=2), on_batch=None)

        payloads = [call[2] for call in sink.calls]
        assert payloads[0].startswith("0,name_0\n")
        assert payloads[1].startswith("2,name_2\n")
        assert payloads[2].startswith("4,name_4\n")

    def test_empty_rows(self, schema):
        sink = FlakySink()
        assert load_rows([], schema, sink, on_batch=None) == 0
        assert sink.calls == []

    def test_exhausted_batch_reports_rows_loaded(self, schema):
        calls = []

        def sink(table_name, column_names, payload):
            calls.append(payload)
            if len(calls) > 2:
                raise TransferError("disk full")
            return payload.count("\n")

        with pytest.raises(BatchExhaustedError) as exc_info:
            load_rows(
                make_rows(30), schema, sink,
                config=LoadConfig(batch_size=10, max_retries=1),
                sleep=Mock(), on_retry=None, on_batch=None,
            )

        assert exc_info.value.rows_loaded == 20
        assert len(calls) == 4

    def test_parse_error_reports_rows_loaded(self, schema):
        def rows():
            for row in make_rows(5):
                yield row
            raise ParseError("unterminated quote", line_number=7)

        with pytest.raises(ParseError) as exc_info:
            load_rows(rows(), schema, FlakySink(), config=LoadConfig(batch_size=2), on_batch=None)

        assert exc_info.value.rows_loaded == 4

    def test_field_count_error_has_global_row_index(self, schema):
        rows = make_rows(5) + [["only one field"]]
        with pytest.raises(FieldCountError) as exc_info:
            load_rows(rows, schema, FlakySink(), config=LoadConfig(batch_size=4), on_batch=None)

        assert exc_info.value.row_index == 6
        assert exc_info.value.rows_loaded == 4

    def test_cancel_between_batches(self, schema):
        cancel = threading.Event()
        sink = FlakySink()

        def on_batch(batch_number, batch_rows, total_rows):
            if batch_number == 2:
                cancel.set()

        with pytest.raises(LoadCancelledError) as exc_info:
            load_rows(
                make_rows(50), schema, sink,
                config=LoadConfig(batch_size=10), cancel_event=cancel, on_batch=on_batch,
            )

        assert len(sink.calls) == 2
        assert exc_info.value.rows_loaded == 20

    def test_invalid_config(self, schema):
        with pytest.raises(ConfigError):
            load_rows(make_rows(1), schema, FlakySink(), config=LoadConfig(batch_size=0))

    def test_default_progress_output(self, schema, capsys):
        load_rows(make_rows(3), schema, FlakySink(), config=LoadConfig(batch_size=2))
        out = capsys.readouterr().out
        assert "Loaded batch 1 (2 rows, 2 total)" in out
        assert "Loaded batch 2 (1 rows, 3 total)" in out
