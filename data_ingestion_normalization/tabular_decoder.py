"""
Tabular decoder: spreadsheet and delimited-text uploads -> list of records.

CSV goes through pandas with every cell kept as text, so the transformer
decides what is numeric. XLSX is read with openpyxl in read-only mode (first
sheet, first row as headers, blank rows skipped); legacy XLS uses pandas+xlrd.
Decoding runs in a worker thread. Any decoder error surfaces as DecodeFailure.
"""

import asyncio
import io
import re
import structlog
import pandas as pd
from typing import Any, Dict, List, Optional

from core_infrastructure.config_manager import PipelineConfig, get_pipeline_config
from core_infrastructure.errors import DecodeFailure, ValidationError
from core_infrastructure.utils.helpers import sanitize_for_json

logger = structlog.get_logger(__name__)

_SHEET_HEADER = re.compile(r"^--- Sheet: .*? ---[ \t]*\r?\n?", re.MULTILINE)
_UNNAMED_COLUMN = re.compile(r"^Unnamed: \d+$")

CSV_TYPES = {"text/csv", "application/csv", "text/plain"}
XLSX_TYPES = {"application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"}
XLS_TYPES = {"application/vnd.ms-excel"}


def strip_sheet_headers(text: str) -> str:
    """Remove the '--- Sheet: name ---' marker lines cloud exports put between sheets."""
    return _SHEET_HEADER.sub('', text)


def validate_upload(filename: str, content_type: Optional[str],
                    config: Optional[PipelineConfig] = None) -> None:
    """Reject uploads whose extension or declared MIME type is not on the allow-list."""
    config = config or get_pipeline_config()
    if not filename or not filename.strip():
        raise ValidationError("Filename is required")
    extension = '.' + filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
    if extension not in [e.lower() for e in config.allowed_extensions]:
        raise ValidationError("Unsupported file type", filename=filename,
                              allowed=config.allowed_extensions)
    if content_type and content_type.split(';')[0].strip().lower() not in config.allowed_content_types:
        raise ValidationError("Unsupported content type", filename=filename, content_type=content_type)


def _detect_format(content_type: Optional[str], filename: str) -> str:
    name = filename.lower()
    if name.endswith('.csv') or (content_type or '').lower() in CSV_TYPES:
        return 'csv'
    if name.endswith('.xlsx') or (content_type or '').lower() in XLSX_TYPES:
        return 'xlsx'
    if name.endswith('.xls') or (content_type or '').lower() in XLS_TYPES:
        return 'xls'
    raise DecodeFailure("Unsupported file format", filename=filename, content_type=content_type)


def _frame_to_records(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    frame = frame.rename(columns=lambda c: '' if _UNNAMED_COLUMN.match(str(c)) else str(c))
    return [sanitize_for_json(row) for row in frame.to_dict(orient='records')]


def _decode_text(content: bytes) -> str:
    try:
        return content.decode('utf-8-sig')
    except UnicodeDecodeError:
        return content.decode('latin-1')


def decode_csv_text(text: str) -> List[Dict[str, Any]]:
    frame = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False, skip_blank_lines=True)
    return _frame_to_records(frame)


def _decode_xlsx(content: bytes) -> List[Dict[str, Any]]:
    from openpyxl import load_workbook

    # Load workbook in read-only mode for memory efficiency
    workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        sheet = workbook[workbook.sheetnames[0]]
        headers: List[str] = []
        records: List[Dict[str, Any]] = []
        for row_idx, row in enumerate(sheet.iter_rows(values_only=True)):
            if row_idx == 0:
                headers = [str(cell) if cell is not None else f'Column_{i}' for i, cell in enumerate(row)]
                continue
            # Skip empty rows
            if not any(cell is not None for cell in row):
                continue
            records.append({headers[i]: cell for i, cell in enumerate(row) if i < len(headers)})
        return records
    finally:
        workbook.close()


def _decode_xls(content: bytes) -> List[Dict[str, Any]]:
    frame = pd.read_excel(io.BytesIO(content), sheet_name=0, engine='xlrd', dtype=str, keep_default_na=False)
    return _frame_to_records(frame)


class TabularDecoder:
    def decode_sync(self, content: bytes, content_type: Optional[str], filename: str) -> List[Dict[str, Any]]:
        file_format = _detect_format(content_type, filename)
        try:
            if file_format == 'csv':
                records = decode_csv_text(_decode_text(content))
            elif file_format == 'xlsx':
                records = _decode_xlsx(content)
            else:
                records = _decode_xls(content)
        except DecodeFailure:
            raise
        except Exception as e:
            logger.error("tabular_decode_failed", filename=filename, format=file_format, error=str(e))
            raise DecodeFailure("File could not be decoded", filename=filename,
                                format=file_format, error=str(e)) from e

        logger.info("tabular_decoded", filename=filename, format=file_format, records=len(records))
        return records

    async def decode(self, content: bytes, content_type: Optional[str], filename: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.decode_sync, content, content_type, filename)

    async def decode_text(self, text: str, filename: str) -> List[Dict[str, Any]]:
        """Delimited text as exported by cloud drives, sheet markers included."""
        try:
            records = await asyncio.to_thread(decode_csv_text, strip_sheet_headers(text))
        except Exception as e:
            logger.error("tabular_decode_failed", filename=filename, format='csv_text', error=str(e))
            raise DecodeFailure("File could not be decoded", filename=filename,
                                format='csv_text', error=str(e)) from e
        logger.info("tabular_decoded", filename=filename, format='csv_text', records=len(records))
        return records
