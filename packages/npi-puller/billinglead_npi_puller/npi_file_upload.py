import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import aiofiles
import pandas as pd

logger = logging.getLogger(__name__)

DELIMITED_EXTENSIONS = {".csv", ".tsv", ".txt"}
SPREADSHEET_EXTENSIONS = {".xlsx", ".xlsm", ".xls"}
ARCHIVE_EXTENSIONS = {".zip"}
SUPPORTED_EXTENSIONS = DELIMITED_EXTENSIONS | SPREADSHEET_EXTENSIONS | ARCHIVE_EXTENSIONS

SNIFF_DELIMITERS = ",\t;|"
SNIFF_BYTES = 64 * 1024

# Errors that mean "this one file could not be read", reported back per file
PARSE_ERRORS = (
    pd.errors.ParserError,
    pd.errors.EmptyDataError,
    UnicodeDecodeError,
    ValueError,
    zipfile.BadZipFile,
    KeyError,
)


class UploadRejectedError(ValueError):
    """Raised when an upload cannot be processed at all (format, size, emptiness)."""


@dataclass
class UploadSource:
    """Rows read from one file (or one archive entry)."""

    name: str
    rows: List[dict]


@dataclass
class ParsedUpload:
    sources: List[UploadSource] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return sum(len(source.rows) for source in self.sources)


def file_extension(name: str) -> str:
    return Path(name).suffix.lower()


def _frame_to_rows(df: pd.DataFrame) -> List[dict]:
    df = df.dropna(how="all").fillna("")
    return df.to_dict(orient="records")


def sniff_separator(content: bytes) -> str:
    """Guess the separator of a .txt upload from its header line; single-column files read as CSV."""
    header = content[:SNIFF_BYTES].decode("utf-8-sig", errors="replace").splitlines()
    if not header:
        return ","
    try:
        return csv.Sniffer().sniff(header[0], delimiters=SNIFF_DELIMITERS).delimiter
    except csv.Error:
        return ","


def parse_delimited(content: bytes, name: str) -> List[dict]:
    """Header row + data rows. Tab separated for .tsv, sniffed for .txt."""
    extension = file_extension(name)
    if extension == ".tsv":
        options = {"sep": "\t"}
    elif extension == ".txt":
        options = {"sep": sniff_separator(content)}
    else:
        options = {"sep": ","}

    try:
        df = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False, encoding="utf-8-sig", **options)
    except UnicodeDecodeError:
        df = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False, encoding="latin-1", **options)
    return _frame_to_rows(df)


def parse_spreadsheet(content: bytes, name: str) -> List[dict]:
    """First sheet only."""
    df = pd.read_excel(io.BytesIO(content), sheet_name=0, dtype=str)
    return _frame_to_rows(df)


def parse_archive(content: bytes, name: str) -> ParsedUpload:
    """Read every delimited-text entry of a ZIP; other entries are skipped."""
    parsed = ParsedUpload()
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        parsed.errors.append(f"Error processing {name}: {e}")
        return parsed

    with archive:
        for info in archive.infolist():
            if info.is_dir() or info.filename.startswith("__MACOSX/"):
                continue
            if file_extension(info.filename) not in DELIMITED_EXTENSIONS:
                logger.debug("Skipping archive entry %s", info.filename)
                continue
            try:
                rows = parse_delimited(archive.read(info), info.filename)
            except PARSE_ERRORS as e:
                parsed.errors.append(f"Error processing {info.filename}: {e}")
                logger.warning("Failed to parse %s: %s", info.filename, e)
                continue
            logger.info("Read %d rows from %s", len(rows), info.filename)
            parsed.sources.append(UploadSource(name=info.filename, rows=rows))
    return parsed


def parse_upload(filename: str, content: bytes, max_bytes: Optional[int] = None) -> ParsedUpload:
    """
    Parse an uploaded spreadsheet, delimited text file, or ZIP of delimited files.

    Raises ``UploadRejectedError`` for unsupported, empty or oversized uploads.
    Files that fail to parse are reported in ``ParsedUpload.errors``.
    """
    extension = file_extension(filename)
    if extension not in SUPPORTED_EXTENSIONS:
        supported = ", ".join(sorted(SUPPORTED_EXTENSIONS))
        raise UploadRejectedError(f"Unsupported file type {extension or filename!r}. Supported formats are {supported}")
    if not content:
        raise UploadRejectedError("Uploaded file is empty")
    if max_bytes is not None and len(content) > max_bytes:
        raise UploadRejectedError(f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")

    if extension in ARCHIVE_EXTENSIONS:
        return parse_archive(content, filename)

    parsed = ParsedUpload()
    try:
        if extension in SPREADSHEET_EXTENSIONS:
            rows = parse_spreadsheet(content, filename)
        else:
            rows = parse_delimited(content, filename)
    except PARSE_ERRORS as e:
        parsed.errors.append(f"Error processing {filename}: {e}")
        logger.warning("Failed to parse %s: %s", filename, e)
        return parsed
    logger.info("Read %d rows from %s", len(rows), filename)
    parsed.sources.append(UploadSource(name=filename, rows=rows))
    return parsed


async def read_upload_file(path: Path) -> bytes:
    """Read a local upload without blocking the event loop."""
    async with aiofiles.open(path, "rb") as f:
        return await f.read()
