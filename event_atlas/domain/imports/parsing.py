"""
Source file parsing (CSV, Excel, JSON) into plain row dictionaries.

Rows are JSON-safe: empty cells become None, timestamps become ISO strings
and numpy scalars become Python numbers, so previews can be stored as JSON
and every stage sees the same values when it re-reads the file.
"""
import io
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from event_atlas.core.errors import ParseError

logger = logging.getLogger(__name__)

CSV_EXTENSIONS = {".csv", ".tsv", ".txt"}
EXCEL_EXTENSIONS = {".xlsx", ".xlsm", ".xls"}
JSON_EXTENSIONS = {".json"}


@dataclass
class ParsedFile:
    file_type: str
    columns: List[str]
    records: List[Dict[str, Any]]
    sheet_names: List[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.records)

    def preview(self, limit: int) -> List[Dict[str, Any]]:
        return self.records[:limit]


def detect_file_type(file_name: str, content_type: Optional[str] = None) -> str:
    lower = (file_name or "").lower()
    for extensions, file_type in (
        (CSV_EXTENSIONS, "csv"),
        (EXCEL_EXTENSIONS, "excel"),
        (JSON_EXTENSIONS, "json"),
    ):
        if any(lower.endswith(extension) for extension in extensions):
            return file_type

    content_type = (content_type or "").lower()
    if "json" in content_type:
        return "json"
    if "spreadsheet" in content_type or "excel" in content_type:
        return "excel"
    if "csv" in content_type or content_type.startswith("text/"):
        return "csv"
    raise ParseError(f"Unsupported file type: {file_name}")


def _clean_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalar
        return _clean_value(value.item())
    if isinstance(value, str):
        return value if value.strip() != "" else None
    return value


def _records_from_frame(df: pd.DataFrame) -> ParsedFile:
    columns = [str(column).strip() for column in df.columns]
    if len(set(columns)) != len(columns):
        raise ParseError(f"Duplicate column names in header: {columns}")
    df.columns = columns
    records = [
        {column: _clean_value(value) for column, value in record.items()}
        for record in df.to_dict("records")
    ]
    return ParsedFile(file_type="", columns=columns, records=records)


def parse_csv(file_content: bytes, delimiter: str = ",") -> ParsedFile:
    if not file_content.strip():
        raise ParseError("File is empty")
    for encoding in ("utf-8-sig", "latin-1"):
        try:
            df = pd.read_csv(
                io.BytesIO(file_content),
                dtype=str,
                keep_default_na=False,
                na_values=[""],
                sep=delimiter,
                encoding=encoding,
            )
            break
        except UnicodeDecodeError:
            continue
        except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError, TypeError) as exc:
            raise ParseError(f"Could not parse CSV file: {exc}") from exc
    else:
        raise ParseError("Could not decode CSV file")

    parsed = _records_from_frame(df)
    parsed.file_type = "csv"
    logger.info("Parsed CSV with %d rows, columns: %s", parsed.row_count, parsed.columns)
    return parsed


def parse_excel(file_content: bytes, sheet_name: Optional[str] = None) -> ParsedFile:
    try:
        sheets = pd.read_excel(io.BytesIO(file_content), sheet_name=None, engine="openpyxl")
    except Exception as exc:
        raise ParseError(f"Could not read Excel file: {exc}") from exc

    sheet_names = list(sheets.keys())
    if not sheet_names:
        raise ParseError("Excel workbook has no sheets")
    selected = sheet_name if sheet_name in sheets else sheet_names[0]

    parsed = _records_from_frame(sheets[selected])
    parsed.file_type = "excel"
    parsed.sheet_names = sheet_names
    logger.info("Parsed Excel sheet '%s' with %d rows", selected, parsed.row_count)
    return parsed


def parse_json(file_content: bytes) -> ParsedFile:
    try:
        data = json.loads(file_content.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ParseError(f"Invalid JSON: {exc}") from exc

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ParseError("JSON must contain an object or array of objects")

    columns: List[str] = []
    for item in data:
        for key in item:
            if key not in columns:
                columns.append(key)
    records = [{column: _clean_value(item.get(column)) for column in columns} for item in data]
    logger.info("Parsed JSON with %d rows", len(records))
    return ParsedFile(file_type="json", columns=columns, records=records)


def parse_file(file_content: bytes, file_name: str, content_type: Optional[str] = None) -> ParsedFile:
    """Parse a stored file; raises ``ParseError`` for malformed or unsupported input."""
    file_type = detect_file_type(file_name, content_type)
    if file_type == "excel":
        parsed = parse_excel(file_content)
    elif file_type == "json":
        parsed = parse_json(file_content)
    else:
        parsed = parse_csv(file_content, "\t" if file_name.lower().endswith(".tsv") else ",")

    if not parsed.columns:
        raise ParseError("File has no columns")
    return parsed
