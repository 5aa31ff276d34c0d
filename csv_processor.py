"""
Spreadsheet upload reader and workbook writer.

Reads CSV / Excel uploads into lists of row dicts keyed by lowercased
header, and writes rows back into an .xlsx workbook for download or
re-upload to the API.
"""
import csv
import io
from typing import Any, Dict, Iterable, Iterator, List, Sequence, Tuple

from openpyxl import Workbook, load_workbook

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def _normalize_header(header, index: int) -> str:
    return str(header).strip().lower() if header not in (None, '') else f'column_{index}'


def _cell_text(value) -> str:
    if value is None:
        return ''
    # Excel stores whole numbers typed into numeric cells as floats
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def process_csv_stream(file_stream, chunk_size: int = 1000) -> Iterator[List[Dict[str, Any]]]:
    """
    Stream a CSV upload in chunks of row dicts.

    Args:
        file_stream: Binary file-like object
        chunk_size: Number of rows per chunk
    """
    text_stream = io.TextIOWrapper(file_stream, encoding='utf-8-sig', newline='')
    reader = csv.DictReader(text_stream)

    chunk = []
    for i, row in enumerate(reader, 1):
        chunk.append({k.strip().lower(): (v or '').strip() for k, v in row.items() if k})
        if i % chunk_size == 0:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def process_excel_stream(file_stream, chunk_size: int = 1000) -> Iterator[List[Dict[str, Any]]]:
    """
    Stream the first sheet of an .xlsx upload in chunks of row dicts.
    Uses openpyxl's read_only mode; fully blank rows are skipped.
    """
    workbook = load_workbook(file_stream, read_only=True, data_only=True)
    try:
        rows_iter = workbook.active.iter_rows(values_only=True)
        headers = next(rows_iter, None)
        if headers is None:
            return
        headers = [_normalize_header(h, i) for i, h in enumerate(headers)]

        chunk = []
        count = 0
        for row_values in rows_iter:
            if all(v in (None, '') for v in row_values):
                continue
            chunk.append({h: _cell_text(v) for h, v in zip(headers, row_values)})
            count += 1
            if count % chunk_size == 0:
                yield chunk
                chunk = []
        if chunk:
            yield chunk
    finally:
        workbook.close()


def process_upload_stream(upload_file, chunk_size: int = 1000) -> Iterator[List[Dict[str, Any]]]:
    """
    Detect the upload type by extension and stream its rows.

    Raises:
        ValueError: If the file type is not supported
    """
    filename = (upload_file.filename or '').lower()

    if filename.endswith('.csv'):
        yield from process_csv_stream(upload_file.stream, chunk_size)
    elif filename.endswith('.xlsx'):
        yield from process_excel_stream(upload_file.stream, chunk_size)
    else:
        raise ValueError('Format file tidak didukung. Unggah file Excel (.xlsx) atau CSV.')


def read_upload_rows(upload_file) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Read a whole upload. Returns (headers, rows); headers come from the first row."""
    rows = [row for chunk in process_upload_stream(upload_file) for row in chunk]
    headers = list(rows[0].keys()) if rows else []
    return headers, rows


def get_missing_columns(available_columns: Iterable[str], required_columns: Sequence[str]) -> List[str]:
    """Required columns absent from the upload, in required order."""
    available = set(available_columns)
    return [c for c in required_columns if c not in available]


def rows_to_workbook(rows: Iterable[Dict[str, Any]], columns: Sequence[str],
                     sheet_name: str = 'Sheet1') -> bytes:
    """Write rows under a header row of `columns` and return the .xlsx bytes."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_name
    sheet.append(list(columns))
    for row in rows:
        sheet.append([row.get(c, '') for c in columns])

    mem = io.BytesIO()
    workbook.save(mem)
    return mem.getvalue()
