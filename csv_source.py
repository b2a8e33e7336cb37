"""
Restartable CSV row source for local files and S3 objects
"""

import codecs
import csv
import io
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from loader_errors import ConfigError, EmptyInputError, ParseError


DEFAULT_ENCODING = "utf-8-sig"

# Bytes read for encoding detection
ENCODING_SAMPLE_BYTES = 1024 * 1024


def raise_field_size_limit() -> int:
    """Lift the csv module's per-field limit as high as the platform allows"""
    limit = sys.maxsize
    while True:
        try:
            csv.field_size_limit(limit)
            return limit
        except OverflowError:
            limit //= 10


# S3 Helper Functions


def is_s3_path(path: str) -> bool:
    """Check if a path is an S3 path"""
    return str(path).startswith("s3://")


def get_s3_filesystem(filesystem: Optional[Any] = None) -> Any:
    """
    Get an s3fs filesystem instance.

    Args:
        filesystem: Optional s3fs.S3FileSystem. If not provided, one will be created
                   using default credentials (environment, ~/.aws/credentials, IAM role).

    Returns:
        s3fs.S3FileSystem instance
    """
    if filesystem is not None:
        return filesystem

    try:
        import s3fs
    except ImportError:
        raise ImportError(
            "s3fs is required for S3 support. Install with: pip install s3fs"
        )

    return s3fs.S3FileSystem()


def open_binary(path: str, filesystem: Optional[Any] = None):
    """Open a local path or S3 URI for binary reading"""
    if is_s3_path(path):
        return get_s3_filesystem(filesystem).open(str(path), "rb")
    if not Path(path).exists():
        raise FileNotFoundError(f"File not found: {path}")
    return open(path, "rb")


# Encoding and naming


def detect_encoding(
    path: str,
    sample_bytes: int = ENCODING_SAMPLE_BYTES,
    filesystem: Optional[Any] = None,
) -> Dict[str, Any]:
    """
    Detect file encoding using chardet on the first sample_bytes of the file

    Returns:
        Dictionary with:
        {
            "encoding": "utf-8",      # Detected encoding (normalized)
            "confidence": 0.99,       # Confidence score (0-1)
            "raw_encoding": "UTF-8-SIG",  # Original chardet output
        }
    """
    import chardet

    with open_binary(path, filesystem) as f:
        raw_data = f.read(sample_bytes)

    result = chardet.detect(raw_data)

    raw_encoding = result["encoding"] or "utf-8"
    encoding = raw_encoding.lower().replace("-", "_").replace("_sig", "-sig")

    # Map common variants to standard Python codec names
    encoding_map = {
        "ascii": "utf-8",  # ASCII is a subset of UTF-8
        "windows_1252": "cp1252",
        "iso_8859_1": "latin-1",
        "iso_8859_15": "latin-1",
    }
    encoding = encoding_map.get(encoding, encoding)

    confidence = result["confidence"] or 0.0
    try:
        codecs.lookup(encoding)
    except LookupError:
        # latin-1 can decode any byte value 0-255
        encoding = "latin-1"
        confidence = 0.0

    return {
        "encoding": encoding,
        "confidence": confidence,
        "raw_encoding": raw_encoding,
    }


def to_snake_case(name: str) -> str:
    """
    Convert a string to snake_case using inflection library

    Examples:
        "FirstName" -> "first_name"
        "User ID" -> "user_id"
        "price-per-unit" -> "price_per_unit"
        "totalAmount" -> "total_amount"
    """
    import inflection

    return inflection.parameterize(
        inflection.underscore(inflection.transliterate(name)), separator="_"
    )


def parse_delimiter(value: str) -> str:
    """
    Parse a delimiter argument

    Accepts ",", "\\t" or "tab", "|", ";", or any other single character.

    Raises:
        ConfigError: For anything longer than one character
    """
    aliases = {"\\t": "\t", "tab": "\t"}
    if value in aliases:
        return aliases[value]
    if len(value) == 1:
        return value
    raise ConfigError(f"Invalid delimiter: {value}")


# Row source


class CsvSource:
    """
    Restartable CSV row source.

    Each call to rows() reopens the file and starts a new pass, so the
    inference pass and the load pass never share a reader. Column count is not
    enforced here; schema inference and encoding check it.

    Args:
        path: Local path or s3:// URI
        delimiter: Single field separator character
        has_header: If False, columns are named col_0, col_1, ... and the first
                    record is treated as data
        encoding: File encoding. If None, detected with chardet.
        filesystem: Optional s3fs filesystem for S3 paths
    """

    def __init__(
        self,
        path: str,
        delimiter: str = ",",
        has_header: bool = True,
        encoding: Optional[str] = None,
        filesystem: Optional[Any] = None,
    ):
        self.path = str(path)
        self.delimiter = delimiter
        self.has_header = has_header
        self.filesystem = filesystem
        self.encoding_info = None

        if encoding is None:
            self.encoding_info = detect_encoding(self.path, filesystem=filesystem)
            encoding = self.encoding_info["encoding"]
        try:
            codecs.lookup(encoding)
        except LookupError:
            raise ConfigError(f"Unknown encoding: {encoding}")
        self.encoding = encoding

        self.columns = self._read_columns()

    @contextmanager
    def _open_reader(self):
        raise_field_size_limit()
        raw = open_binary(self.path, self.filesystem)
        try:
            text = io.TextIOWrapper(raw, encoding=self.encoding, newline="")
            yield csv.reader(text, delimiter=self.delimiter, strict=True)
        finally:
            raw.close()

    def _records(self, reader) -> Iterator[List[str]]:
        """Non-blank records, with csv and decode failures turned into ParseError"""
        while True:
            try:
                record = next(reader)
            except StopIteration:
                return
            except csv.Error as e:
                raise ParseError(str(e), line_number=reader.line_num) from e
            except UnicodeDecodeError as e:
                raise ParseError(
                    f"Cannot decode as {self.encoding}: {e}", line_number=reader.line_num + 1
                ) from e

            if not record:
                continue  # Blank line
            yield record

    def _read_columns(self) -> List[str]:
        with self._open_reader() as reader:
            first_record = next(self._records(reader), None)

        if first_record is None:
            raise EmptyInputError(f"Empty CSV file: {self.path}")

        if self.has_header:
            return list(first_record)
        return [f"col_{i}" for i in range(len(first_record))]

    def rows(self) -> Iterator[List[str]]:
        """
        Start a new pass over the data rows

        Yields:
            Each data row as a list of strings (header excluded)

        Raises:
            ParseError: On malformed CSV or undecodable bytes
        """
        with self._open_reader() as reader:
            records = self._records(reader)
            if self.has_header:
                next(records, None)
            yield from records
