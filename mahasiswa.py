import logging
import re
from typing import Any, Dict, List

from api_client import ApiError, SessionExpired, unwrap
from models import Mahasiswa
from view_state import FilterSet, Pagination, ScreenState

logger = logging.getLogger(__name__)

STATUS_OPTIONS = ['aktif', 'cuti', 'lulus', 'keluar']

GENDER_DISPLAY = {'L': 'Laki-laki', 'P': 'Perempuan'}
GENDER_BACKEND = {v: k for k, v in GENDER_DISPLAY.items()}

FORM_FIELDS = ['nim', 'name', 'username', 'telp', 'email', 'gender', 'ipk', 'status', 'angkatan']
NUMERIC_FIELDS = ('nim', 'telp', 'angkatan')

EMPTY_FORM = {
    'nim': '', 'name': '', 'username': '', 'telp': '', 'email': '',
    'gender': 'Laki-laki', 'ipk': 0, 'status': 'aktif', 'angkatan': '', 'password': '',
}


def gender_display(gender) -> str:
    if not gender:
        return '-'
    return GENDER_DISPLAY.get(gender, gender)


def gender_backend(display) -> str:
    return GENDER_BACKEND.get(display, display)


def periode_of(semester) -> str:
    """Odd semesters are Ganjil, even ones Genap; None when unknown."""
    try:
        number = int(semester)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    return 'Ganjil' if number % 2 == 1 else 'Genap'


def _search_match(m, q) -> bool:
    haystack = ' '.join(str(v) for v in m.to_dict().values() if v is not None).lower()
    return str(q).lower() in haystack


def _semester_match(m, value) -> bool:
    try:
        return int(m.semester) == int(value)
    except (TypeError, ValueError):
        return False


MAHASISWA_FILTERS = {
    'search': _search_match,
    'semester': _semester_match,
    'periode': lambda m, v: periode_of(m.semester) == v,
    'status': lambda m, v: m.status == v,
    'gender': lambda m, v: gender_display(m.gender) == gender_display(gender_backend(v)),
    'angkatan': lambda m, v: str(m.angkatan) == str(v),
}


def sanitize_form(form: Dict[str, Any]) -> Dict[str, Any]:
    """Strip non digits from the numeric-only text fields."""
    clean = dict(EMPTY_FORM, **form)
    for field in NUMERIC_FIELDS:
        clean[field] = re.sub(r'[^0-9]', '', str(clean.get(field) or ''))
    return clean


def missing_fields(form: Dict[str, Any], edit: bool) -> List[str]:
    missing = [f for f in FORM_FIELDS if form.get(f) in (None, '')]
    if not edit and not form.get('password'):
        missing.append('password')
    return missing


def save_error_message(exc: ApiError) -> str:
    errors = exc.field('errors')
    if isinstance(errors, dict) and errors:
        flat = []
        for value in errors.values():
            flat.extend(value if isinstance(value, list) else [value])
        return ', '.join(str(v) for v in flat)
    return exc.field('message') or 'Gagal simpan data'


class MahasiswaScreen(ScreenState):
    def __init__(self, api, page=1, page_size=10, **kwargs):
        super().__init__(**kwargs)
        self.api = api
        self.data: List[Mahasiswa] = []
        self.pagination = Pagination(page, page_size)
        self.filters = FilterSet(MAHASISWA_FILTERS, on_change=lambda: self.pagination.set_page(1))
        self.form = dict(EMPTY_FORM)
        self.edit_mode = False

    def load(self):
        self.loading = True
        try:
            self.data = Mahasiswa.many(unwrap(self.api.get('/users', params={'role': 'mahasiswa'}), []))
        except SessionExpired:
            raise
        except ApiError as exc:
            logger.warning("[Mahasiswa] load failed: %s", exc.message)
            self.data = []
            self.banner.error('Gagal memuat data')
        finally:
            self.loading = False
        return self.data

    def options(self) -> Dict[str, list]:
        semesters = sorted({int(m.semester) for m in self.data if _semester_match(m, m.semester)})
        periodes = []
        for m in self.data:
            p = periode_of(m.semester)
            if p and p not in periodes:
                periodes.append(p)
        genders = sorted({gender_display(m.gender) for m in self.data if m.gender})
        angkatan = sorted({str(m.angkatan) for m in self.data if m.angkatan},
                          key=lambda a: int(a) if a.isdigit() else 0, reverse=True)
        return {
            'semester': semesters,
            'periode': periodes,
            'status': STATUS_OPTIONS,
            'gender': genders,
            'angkatan': angkatan,
        }

    def filtered(self) -> List[Mahasiswa]:
        return self.filters.apply(self.data)

    def page_rows(self) -> List[Mahasiswa]:
        return self.pagination.slice(self.filtered())

    def start_edit(self, mahasiswa: Mahasiswa):
        self.form = dict(EMPTY_FORM, **mahasiswa.to_dict())
        self.form['password'] = ''
        self.edit_mode = True
        self.open_modal('form')

    def save(self, form: Dict[str, Any], edit: bool = False) -> bool:
        self.form = payload = sanitize_form(form)
        self.edit_mode = edit
        missing = missing_fields(payload, edit)
        if missing:
            if missing == ['password']:
                self.banner.error('Password wajib diisi.')
            else:
                self.banner.error(f"Field wajib diisi: {', '.join(missing)}")
            return False

        payload['gender'] = gender_display(payload['gender'])
        try:
            if edit:
                if not payload.get('password'):
                    payload.pop('password', None)
                self.api.put(f"/users/{payload['id']}", json=payload)
                message = 'Data mahasiswa berhasil diupdate.'
            else:
                payload['role'] = 'mahasiswa'
                self.api.post('/users', json=payload)
                message = 'Data mahasiswa berhasil ditambahkan.'
        except SessionExpired:
            raise
        except ApiError as exc:
            self.banner.error(save_error_message(exc))
            return False

        self.load()
        self.banner.success(message)
        self.form = dict(EMPTY_FORM)
        self.edit_mode = False
        self.close_modal()
        return True

    def delete(self, user_id) -> bool:
        try:
            self.api.delete(f'/users/{user_id}')
        except SessionExpired:
            raise
        except ApiError as exc:
            logger.warning("[Mahasiswa] delete %s failed: %s", user_id, exc.message)
            self.banner.error('Gagal menghapus data')
            return False
        self.load()
        self.banner.success('Data mahasiswa berhasil dihapus.')
        return True

    def bulk_delete(self, ids) -> Dict[str, list]:
        """Delete every selected id; one failure does not stop the others."""
        calls = {str(i): (lambda i=i: self.api.delete(f'/users/{i}') or True) for i in ids}
        results = self.api.gather(calls, defaults={k: False for k in calls})
        succeeded = [k for k, ok in results.items() if ok]
        failed = [k for k, ok in results.items() if not ok]

        self.load()
        if failed:
            self.banner.error(f'{len(failed)} data gagal dihapus (mungkin sudah tidak ada). '
                              f'{len(succeeded)} data berhasil dihapus.')
        else:
            self.banner.success(f'{len(succeeded)} data mahasiswa berhasil dihapus.')
        return {'succeeded': succeeded, 'failed': failed}

    def to_dict(self) -> Dict[str, Any]:
        rows = self.filtered()
        d = super().to_dict()
        d.update({
            'rows': [dict(m.to_dict(), gender_display=gender_display(m.gender))
                     for m in self.pagination.slice(rows)],
            'pagination': self.pagination.to_dict(len(rows)),
            'filters': self.filters.values,
            'options': self.options(),
        })
        return d
