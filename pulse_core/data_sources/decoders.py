"""
Typed decoders turning raw response bytes into JSON-compatible payloads.

Every decoder either returns a payload or raises ParseError; nothing else
escapes. JSON documents are validated with pydantic, CSV goes through the
standard csv module and spreadsheets through openpyxl.
"""
import csv
import io
import json
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import openpyxl
from pydantic import TypeAdapter, ValidationError

from ..exceptions import ParseError


class SourceDecoder(ABC):
    """Base class for per-endpoint payload decoders"""

    format = "raw"

    @abstractmethod
    def decode(self, raw: bytes, source_id: str = None, endpoint: str = None) -> Any:
        pass


class JSONDecoder(SourceDecoder):
    """
    Parse JSON, optionally narrow the document, then validate it.

    Args:
        schema: type understood by pydantic's TypeAdapter (model, list of
            models, dict...). ``None`` passes the document through unchanged.
        extract: picks the relevant part of the document before validation.
    """

    format = "json"

    def __init__(self, schema: Any = None, extract: Callable[[Any], Any] = None):
        self.adapter = TypeAdapter(schema) if schema is not None else None
        self.extract = extract

    def decode(self, raw: bytes, source_id: str = None, endpoint: str = None) -> Any:
        try:
            document = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Invalid JSON: {e}", source_id=source_id, endpoint=endpoint) from e

        if self.extract is not None:
            try:
                document = self.extract(document)
            except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
                raise ParseError(f"Unexpected document layout: {e!r}", source_id=source_id, endpoint=endpoint) from e

        if self.adapter is None:
            return document

        try:
            value = self.adapter.validate_python(document)
        except ValidationError as e:
            raise ParseError(
                f"Payload failed validation ({e.error_count()} errors): {e.errors()[0]['msg']}",
                source_id=source_id,
                endpoint=endpoint,
            ) from e
        return self.adapter.dump_python(value, mode="json")


def _to_number(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    text = value.strip().replace(",", "")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return int(number) if number.is_integer() else number


class CSVDecoder(SourceDecoder):
    """CSV with a header row; HXL hashtag rows (``#date,#adm1...``) are skipped."""

    format = "csv"

    def __init__(
        self,
        required_columns: Sequence[str] = (),
        numeric_columns: Sequence[str] = (),
        skip_hxl_rows: bool = True,
    ):
        self.required_columns = tuple(required_columns)
        self.numeric_columns = tuple(numeric_columns)
        self.skip_hxl_rows = skip_hxl_rows

    def decode(self, raw: bytes, source_id: str = None, endpoint: str = None) -> List[Dict[str, Any]]:
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ParseError(f"CSV is not UTF-8: {e}", source_id=source_id, endpoint=endpoint) from e

        reader = csv.DictReader(io.StringIO(text))
        try:
            fieldnames = reader.fieldnames
            if not fieldnames:
                raise ParseError("CSV has no header row", source_id=source_id, endpoint=endpoint)
            missing = [c for c in self.required_columns if c not in fieldnames]
            if missing:
                raise ParseError(f"CSV missing columns: {', '.join(missing)}", source_id=source_id, endpoint=endpoint)

            rows = []
            for row in reader:
                first = next(iter(row.values()), None)
                if self.skip_hxl_rows and isinstance(first, str) and first.startswith("#"):
                    continue
                record: Dict[str, Any] = {k: v for k, v in row.items() if k is not None}
                for column in self.numeric_columns:
                    if column in record:
                        record[column] = _to_number(record[column])
                rows.append(record)
        except csv.Error as e:
            raise ParseError(f"Malformed CSV: {e}", source_id=source_id, endpoint=endpoint) from e
        return rows


def _cell(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class XLSXDecoder(SourceDecoder):
    """First row of the sheet is the header; blank rows are dropped."""

    format = "xlsx"

    def __init__(self, sheet: str = None, required_columns: Sequence[str] = ()):
        self.sheet = sheet
        self.required_columns = tuple(required_columns)

    def decode(self, raw: bytes, source_id: str = None, endpoint: str = None) -> List[Dict[str, Any]]:
        # openpyxl has no common base exception for corrupt workbooks
        try:
            workbook = openpyxl.load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
        except Exception as e:
            raise ParseError(f"Unreadable spreadsheet: {e}", source_id=source_id, endpoint=endpoint) from e

        try:
            return self._read_records(workbook, source_id, endpoint)
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Unreadable spreadsheet contents: {e}", source_id=source_id, endpoint=endpoint) from e
        finally:
            workbook.close()

    def _read_records(self, workbook, source_id: str, endpoint: str) -> List[Dict[str, Any]]:
        if self.sheet is not None:
            if self.sheet not in workbook.sheetnames:
                raise ParseError(f"Sheet not found: {self.sheet}", source_id=source_id, endpoint=endpoint)
            worksheet = workbook[self.sheet]
        else:
            worksheet = workbook.worksheets[0]

        rows = worksheet.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            raise ParseError("Spreadsheet is empty", source_id=source_id, endpoint=endpoint)
        columns = [
            str(name).strip() if name is not None else f"column_{index}"
            for index, name in enumerate(header)
        ]
        missing = [c for c in self.required_columns if c not in columns]
        if missing:
            raise ParseError(f"Spreadsheet missing columns: {', '.join(missing)}", source_id=source_id, endpoint=endpoint)

        records = []
        for row in rows:
            if all(value is None for value in row):
                continue
            records.append({column: _cell(value) for column, value in zip(columns, row)})
        return records
