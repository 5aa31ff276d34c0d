"""
Mahasiswa spreadsheet import: template, validation, preview edits, submit.

Rows are dicts keyed by the template columns. Validation produces flat
messages ("... (Baris N)", N being the spreadsheet row) and structured
cell errors {row, field, message, nim} where row is the 0-based data
index, so the preview can mark individual cells.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from api_client import ApiError, SessionExpired
from csv_processor import get_missing_columns, rows_to_workbook

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ['nim', 'nama', 'username', 'email', 'telepon', 'password',
                    'gender', 'ipk', 'status', 'angkatan', 'semester']

SHEET_NAME = 'Mahasiswa'
TEMPLATE_FILENAME = 'Template_Import_Mahasiswa.xlsx'
EDITED_FILENAME = 'Data_Import_Mahasiswa_Edited.xlsx'
IMPORT_ENDPOINT = '/users/import-mahasiswa'

TEMPLATE_ROW = {
    'nim': '2021000001',
    'nama': 'Nama Mahasiswa Contoh',
    'username': 'username_mahasiswa',
    'email': 'mahasiswa.contoh@umj.ac.id',
    'telepon': '081234567890',
    'password': 'password123',
    'gender': 'Laki-laki',
    'ipk': 3.5,
    'status': 'aktif',
    'angkatan': '2021',
    'semester': 1,
}

GENDER_VALUES = ('Laki-laki', 'Perempuan')
STATUS_VALUES = ('aktif', 'cuti', 'lulus', 'keluar')

# Form field names that differ from the spreadsheet columns
FIELD_MAP = {'name': 'nama', 'telp': 'telepon'}

_DIGITS = re.compile(r'^[0-9]+$')
_EMAIL = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


def build_template() -> bytes:
    return rows_to_workbook([TEMPLATE_ROW], REQUIRED_COLUMNS, SHEET_NAME)


def _text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _number(value) -> Optional[float]:
    try:
        return float(_text(value))
    except ValueError:
        return None


def _format_errors(row: Dict[str, Any]) -> List[tuple]:
    """(field, message) pairs for required/format rules of one row."""
    errors = []
    if not _DIGITS.match(_text(row.get('nim'))):
        errors.append(('nim', 'NIM harus diisi dengan angka'))
    if not _text(row.get('nama')):
        errors.append(('nama', 'Nama harus diisi'))
    if not _text(row.get('username')):
        errors.append(('username', 'Username harus diisi'))
    if not _EMAIL.match(_text(row.get('email'))):
        errors.append(('email', 'Email tidak valid'))
    if not _DIGITS.match(_text(row.get('telepon'))):
        errors.append(('telepon', 'Nomor telepon harus diisi dengan angka'))
    if len(_text(row.get('password'))) < 6:
        errors.append(('password', 'Password harus diisi minimal 6 karakter'))
    if _text(row.get('gender')) not in GENDER_VALUES:
        errors.append(('gender', "Gender harus diisi dengan 'Laki-laki' atau 'Perempuan'"))
    ipk = _number(row.get('ipk'))
    if ipk is None or not 0 <= ipk <= 4:
        errors.append(('ipk', 'IPK harus diisi dengan angka antara 0-4'))
    if _text(row.get('status')) not in STATUS_VALUES:
        errors.append(('status', "Status harus diisi dengan 'aktif', 'cuti', 'lulus', atau 'keluar'"))
    if not _DIGITS.match(_text(row.get('angkatan'))):
        errors.append(('angkatan', 'Angkatan harus diisi dengan angka'))
    semester = _number(row.get('semester'))
    if semester is None or not 1 <= semester <= 8:
        errors.append(('semester', 'Semester harus diisi dengan angka 1-8'))
    return errors


def _identity(row) -> tuple:
    return (_text(row.get('nim')),
            _text(row.get('username')).lower(),
            _text(row.get('email')).lower())


def _existing_index(existing) -> Dict[str, Dict[str, Any]]:
    """Map nim / username / email of existing records to their id."""
    index = {'nim': {}, 'username': {}, 'email': {}}
    for record in existing or []:
        get = record.get if isinstance(record, dict) else lambda k, r=record: getattr(r, k, None)
        record_id = get('id')
        if get('nim'):
            index['nim'][_text(get('nim'))] = record_id
        if get('username'):
            index['username'][_text(get('username')).lower()] = record_id
        if get('email'):
            index['email'][_text(get('email')).lower()] = record_id
    return index


def _in_database(index, field, value, row_id=None) -> bool:
    if not value or value not in index[field]:
        return False
    return row_id is None or str(index[field][value]) != str(row_id)


class ValidationResult:
    def __init__(self, errors=None, cell_errors=None):
        self.errors: List[str] = errors or []
        self.cell_errors: List[Dict[str, Any]] = cell_errors or []

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self):
        return {'valid': self.valid, 'errors': self.errors, 'cell_errors': self.cell_errors}


def validate_rows(rows: List[Dict[str, Any]], existing=None,
                  headers: Optional[List[str]] = None) -> ValidationResult:
    """
    Validate a whole import file against the format rules, itself, and the
    existing records. A missing column stops validation before any row is
    checked.
    """
    if not rows:
        return ValidationResult(['File Excel kosong'])

    headers = headers if headers is not None else list(rows[0].keys())
    missing = get_missing_columns([h.lower() for h in headers], REQUIRED_COLUMNS)
    if missing:
        return ValidationResult([f"Kolom yang diperlukan tidak ditemukan: {', '.join(missing)}"])

    index = _existing_index(existing)
    errors, cell_errors = [], []
    seen = {'nim': set(), 'username': set(), 'email': set()}

    def add(i, field, message, flat, nim):
        errors.append(f'{flat} (Baris {i + 2})')
        cell_errors.append({'row': i, 'field': field, 'message': message, 'nim': nim})

    for i, row in enumerate(rows):
        nim, username, email = _identity(row)
        for field, message in _format_errors(row):
            add(i, field, message, message, nim)

        for field, value, label in (('nim', nim, f'NIM {nim}'),
                                    ('username', username, f"Username {_text(row.get('username'))}"),
                                    ('email', email, f"Email {_text(row.get('email'))}")):
            if not value:
                continue
            name = field.upper() if field == 'nim' else field.capitalize()
            if value in seen[field]:
                add(i, field, f'{name} sudah terdaftar dalam file ini',
                    f'{label} sudah terdaftar dalam file Excel ini', nim)
            else:
                seen[field].add(value)
            if _in_database(index, field, value):
                add(i, field, f'{name} sudah terdaftar di database',
                    f'{label} sudah terdaftar di database', nim)

    # Same message for the same row is reported once
    unique = list(dict.fromkeys(errors))
    return ValidationResult(unique, cell_errors)


def validate_row(row: Dict[str, Any], all_rows: List[Dict[str, Any]], row_idx: int,
                 existing=None) -> List[Dict[str, str]]:
    """Revalidate one row of the preview after an edit."""
    errors = [{'field': f, 'message': m} for f, m in _format_errors(row)]
    nim, username, email = _identity(row)
    index = _existing_index(existing)

    others = [_identity(r) for i, r in enumerate(all_rows) if i != row_idx]
    for pos, (field, value) in enumerate((('nim', nim), ('username', username), ('email', email))):
        if not value:
            continue
        name = field.upper() if field == 'nim' else field.capitalize()
        if any(other[pos] == value for other in others):
            errors.append({'field': field, 'message': f'{name} sudah terdaftar dalam file ini'})
        if _in_database(index, field, value, row.get('id')):
            errors.append({'field': field, 'message': f'{name} sudah terdaftar di database'})
    return errors


def apply_cell_edit(rows: List[Dict[str, Any]], cell_errors: List[Dict[str, Any]],
                    row_idx: int, key: str, value, existing=None):
    """
    Set one cell and recompute only that row's cell errors.

    Returns (rows, cell_errors) as new lists; the inputs are left alone.
    """
    if not 0 <= row_idx < len(rows):
        raise IndexError(f'Baris {row_idx} tidak ada')
    column = FIELD_MAP.get(key, key)
    rows = list(rows)
    rows[row_idx] = dict(rows[row_idx], **{column: value})

    kept = [err for err in cell_errors if err.get('row') != row_idx]
    nim = _text(rows[row_idx].get('nim'))
    for err in validate_row(rows[row_idx], rows, row_idx, existing):
        kept.append({'row': row_idx, 'field': err['field'], 'message': err['message'], 'nim': nim})
    return rows, kept


def _as_list(errors) -> List[str]:
    if isinstance(errors, dict):
        flat = []
        for value in errors.values():
            flat.extend(value if isinstance(value, list) else [value])
        return [str(e) for e in flat]
    return list(errors or [])


class ImportOutcome:
    def __init__(self, imported_count=0, error='', errors=None, cell_errors=None,
                 failed_rows=None, sent=False):
        self.imported_count = imported_count
        self.error = error
        self.errors = errors or []
        self.cell_errors = cell_errors or []
        self.failed_rows = failed_rows or []
        self.sent = sent

    @property
    def complete(self) -> bool:
        return self.sent and not self.error

    def to_dict(self):
        return {
            'imported_count': self.imported_count,
            'error': self.error,
            'errors': self.errors,
            'cell_errors': self.cell_errors,
            'failed_rows': self.failed_rows,
            'sent': self.sent,
        }


def submit_import(api, rows: List[Dict[str, Any]], existing=None) -> ImportOutcome:
    """
    Validate and, only when clean, upload the rows as an .xlsx workbook.

    Partial success (HTTP 200 with errors) and rejection (HTTP 422) hand back
    the failed rows so the preview can show them again.
    """
    result = validate_rows(rows, existing)
    if not result.valid:
        return ImportOutcome(errors=result.errors, cell_errors=result.cell_errors)

    columns = list(REQUIRED_COLUMNS) + [k for k in rows[0] if k not in REQUIRED_COLUMNS]
    content = rows_to_workbook(rows, columns, SHEET_NAME)
    try:
        body = api.upload(IMPORT_ENDPOINT, EDITED_FILENAME, content) or {}
    except SessionExpired:
        raise
    except ApiError as exc:
        if exc.status == 422:
            return ImportOutcome(
                error=exc.field('message') or 'Gagal mengimpor data',
                errors=_as_list(exc.field('errors')),
                cell_errors=exc.field('cell_errors') or [],
                failed_rows=exc.field('failed_rows') or [],
                sent=True,
            )
        logger.warning("[Import] mahasiswa import failed: %s", exc.message)
        return ImportOutcome(error='Gagal mengimpor data', sent=True)

    imported = int(body.get('imported_count') or 0)
    if body.get('errors'):
        return ImportOutcome(
            imported_count=imported,
            error='Sebagian data gagal diimpor karena tidak valid:',
            errors=body['errors'],
            cell_errors=body.get('cell_errors') or [],
            failed_rows=body.get('failed_rows') or [],
            sent=True,
        )
    logger.info("[Import] %s mahasiswa imported", imported)
    return ImportOutcome(imported_count=imported, sent=True)
