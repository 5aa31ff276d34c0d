"""
Schedule detail pages of non-block courses: CSR sessions and the
non-block non-CSR (materi / agenda) rows.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from api_client import ApiError, SessionExpired, unwrap
from models import MataKuliah, jadwal_from_payload
from view_state import ScreenState

logger = logging.getLogger(__name__)

MINUTES_PER_SESSION = 50

CSR_SESSIONS = {'reguler': 3, 'responsi': 2}
CSR_LABELS = {'reguler': 'CSR Reguler', 'responsi': 'CSR Responsi'}

MSG_REQUIRED = 'Semua field harus diisi!'
MSG_REQUIRED_WAJIB = 'Semua field wajib harus diisi!'
MSG_BEFORE_START = 'Tanggal tidak boleh sebelum tanggal mulai!'
MSG_AFTER_END = 'Tanggal tidak boleh setelah tanggal akhir!'


def hitung_jam_selesai(jam_mulai: str, jumlah_sesi) -> str:
    """End time of `jumlah_sesi` 50 minute sessions from "HH.MM" or "HH:MM", as "HH.MM"."""
    if not jam_mulai:
        return ''
    parts = str(jam_mulai).replace(':', '.').split('.')
    try:
        jam, menit = int(parts[0]), int(parts[1])
        sesi = int(jumlah_sesi)
    except (IndexError, ValueError, TypeError):
        return ''
    total = jam * 60 + menit + sesi * MINUTES_PER_SESSION
    return f"{total // 60:02d}.{total % 60:02d}"


def sesi_for_jenis_csr(jenis_csr: str) -> int:
    return CSR_SESSIONS.get(jenis_csr, CSR_SESSIONS['reguler'])


def format_jam(jam: Optional[str]) -> str:
    """"HH:MM[:SS]" from the API becomes the "HH.MM" used by the time dropdown."""
    if not jam:
        return ''
    return str(jam)[:5].replace(':', '.')


def _to_date(value) -> Optional[date]:
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value)[:10]).date()
    except ValueError:
        return None


def check_tanggal_range(tanggal, mata_kuliah) -> Optional[str]:
    """Error message when `tanggal` falls outside the course's date range, None otherwise."""
    value = _to_date(tanggal)
    if value is None or mata_kuliah is None:
        return None
    start = _to_date(mata_kuliah.get('tanggal_mulai'))
    end = _to_date(mata_kuliah.get('tanggal_akhir'))
    if start and value < start:
        return MSG_BEFORE_START
    if end and value > end:
        return MSG_AFTER_END
    return None


class _NonBlokDetail(ScreenState):
    """Shared batch load and CRUD flow; subclasses name the endpoints and the form."""

    base = None
    jadwal_key = None
    kind = None
    save_error = 'Gagal menyimpan jadwal'
    delete_error = 'Gagal menghapus jadwal'

    def __init__(self, api, kode: str, **kwargs):
        super().__init__(**kwargs)
        self.api = api
        self.kode = kode
        self.mata_kuliah: Optional[MataKuliah] = None
        self.jadwal = []
        self.dosen_list: List[Dict[str, Any]] = []
        self.ruangan_list: List[Dict[str, Any]] = []
        self.jam_options: List[str] = []
        self.form_error: Optional[str] = None

    def _batch_path(self):
        return f'/{self.base}/{self.kode}/batch-data'

    def _apply_batch(self, data: Dict[str, Any]):
        self.mata_kuliah = MataKuliah.from_payload(data.get('mata_kuliah') or {})
        self.jadwal = [jadwal_from_payload(j, self.kind) for j in data.get(self.jadwal_key) or []]
        self.dosen_list = list(data.get('dosen_list') or [])
        self.ruangan_list = list(data.get('ruangan_list') or [])
        self.jam_options = list(data.get('jam_options') or [])

    def load(self) -> bool:
        generation = self.guard.begin()
        self.loading = True
        try:
            data = unwrap(self.api.get(self._batch_path()), {}) or {}
        except SessionExpired:
            raise
        except ApiError as exc:
            if self.guard.accept(generation):
                self.banner.error(exc.field('message') or 'Gagal mengambil data')
                self.loading = False
            return False
        if not self.guard.accept(generation):
            return False
        self._apply_batch(data)
        self.loading = False
        return True

    def find_jadwal(self, jadwal_id):
        for j in self.jadwal:
            if str(j.id) == str(jadwal_id):
                return j
        return None

    def validate(self, form: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def payload(self, form: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def save(self, form: Dict[str, Any], jadwal_id=None) -> bool:
        """Create (or update when `jadwal_id` is given), then reload the batch."""
        self.form_error = self.validate(form)
        if self.form_error:
            return False

        body = self.payload(form)
        try:
            if jadwal_id is not None:
                self.api.put(f'/{self.base}/jadwal/{self.kode}/{jadwal_id}', json=body)
            else:
                self.api.post(f'/{self.base}/jadwal/{self.kode}', json=body)
        except SessionExpired:
            raise
        except ApiError as exc:
            logger.warning("[%s] save %s failed: %s", self.base, self.kode, exc.message)
            self.form_error = exc.field('message') or self.save_error
            return False

        self.load()
        self.close_modal()
        return True

    def delete(self, jadwal_id) -> bool:
        try:
            self.api.delete(f'/{self.base}/jadwal/{self.kode}/{jadwal_id}')
        except SessionExpired:
            raise
        except ApiError as exc:
            self.banner.error(exc.field('message') or self.delete_error)
            return False
        self.load()
        self.close_modal()
        return True

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({
            'kode': self.kode,
            'mata_kuliah': self.mata_kuliah.to_dict() if self.mata_kuliah else None,
            'jadwal': [j.to_dict() for j in self.jadwal],
            'dosen_list': self.dosen_list,
            'ruangan_list': self.ruangan_list,
            'jam_options': self.jam_options,
            'form_error': self.form_error,
        })
        return d


class CSRDetail(_NonBlokDetail):
    base = 'csr'
    jadwal_key = 'jadwal_csr'
    kind = 'csr'
    save_error = 'Gagal menyimpan jadwal CSR'
    delete_error = 'Gagal menghapus jadwal CSR'

    REQUIRED = ('jenis_csr', 'tanggal', 'jam_mulai', 'jam_selesai', 'dosen_id',
                'ruangan_id', 'kelompok_kecil_id', 'kategori_id', 'topik')

    def __init__(self, api, kode: str, **kwargs):
        super().__init__(api, kode, **kwargs)
        self.kelompok_kecil: List[Dict[str, Any]] = []
        self.kategori_list: List[Dict[str, Any]] = []
        self.absensi_jadwal = None
        self.mahasiswa: List[Dict[str, Any]] = []
        self.absensi: Dict[str, bool] = {}

    def _apply_batch(self, data):
        super()._apply_batch(data)
        self.kelompok_kecil = list(data.get('kelompok_kecil') or [])
        self.kategori_list = list(data.get('kategori_list') or [])

    @staticmethod
    def complete_form(form: Dict[str, Any]) -> Dict[str, Any]:
        """Derive jumlah_sesi from jenis_csr and jam_selesai from the start time."""
        form = dict(form)
        form['jumlah_sesi'] = sesi_for_jenis_csr(form.get('jenis_csr'))
        form['jam_selesai'] = hitung_jam_selesai(form.get('jam_mulai'), form['jumlah_sesi'])
        return form

    def validate(self, form):
        if any(not form.get(name) for name in self.REQUIRED):
            return MSG_REQUIRED
        if form.get('jenis_csr') not in CSR_SESSIONS:
            return MSG_REQUIRED
        return check_tanggal_range(form.get('tanggal'), self.mata_kuliah)

    def payload(self, form):
        body = {name: form.get(name) for name in self.REQUIRED}
        body['jumlah_sesi'] = form.get('jumlah_sesi') or sesi_for_jenis_csr(form.get('jenis_csr'))
        return body

    def save(self, form, jadwal_id=None):
        return super().save(self.complete_form(form), jadwal_id)

    def edit_form(self, jadwal_id) -> Dict[str, Any]:
        j = self.find_jadwal(jadwal_id)
        if j is None:
            raise KeyError(jadwal_id)
        tanggal = _to_date(j.tanggal)
        return {
            'jenis_csr': j.jenis_csr,
            'tanggal': tanggal.isoformat() if tanggal else '',
            'jam_mulai': format_jam(j.jam_mulai),
            'jumlah_sesi': j.jumlah_sesi,
            'jam_selesai': format_jam(j.jam_selesai),
            'dosen_id': j.dosen_id,
            'ruangan_id': j.ruangan_id,
            'kelompok_kecil_id': j.kelompok_kecil_id,
            'kategori_id': j.kategori_id,
            'topik': j.topik,
        }

    # --- attendance ---

    def open_absensi(self, jadwal_id) -> bool:
        j = self.find_jadwal(jadwal_id)
        if j is None:
            raise KeyError(jadwal_id)
        self.absensi_jadwal = j
        self.mahasiswa, self.absensi = [], {}
        self.open_modal('absensi')
        if not j.kelompok_kecil_id:
            return True

        try:
            roster = unwrap(self.api.get(f'/kelompok-kecil/{j.kelompok_kecil_id}/mahasiswa'), []) or []
            existing = self.api.get(f'/csr/{self.kode}/jadwal/{j.id}/absensi') or {}
        except SessionExpired:
            raise
        except ApiError as exc:
            self.banner.error(exc.field('message') or 'Gagal memuat data mahasiswa/absensi')
            return False

        self.mahasiswa = [{
            'npm': m.get('nim'),
            'nim': m.get('nim') or '',
            'nama': m.get('name') or m.get('nama') or '',
            'gender': m.get('gender') or 'L',
            'ipk': m.get('ipk') or 0.0,
        } for m in roster]

        # The API answers either a list or an object keyed by npm
        records = existing.get('absensi') if isinstance(existing, dict) else None
        if isinstance(records, list):
            self.absensi = {r.get('mahasiswa_npm'): bool(r.get('hadir')) for r in records}
        elif isinstance(records, dict):
            self.absensi = {npm: bool((r or {}).get('hadir')) for npm, r in records.items()}
        return True

    def set_hadir(self, npm, hadir: bool):
        self.absensi[npm] = bool(hadir)

    def absensi_payload(self) -> Dict[str, Any]:
        return {'absensi': [
            {'mahasiswa_npm': m['npm'], 'hadir': self.absensi.get(m['npm'], False)}
            for m in self.mahasiswa
        ]}

    def save_absensi(self) -> bool:
        if self.absensi_jadwal is None:
            return False
        try:
            self.api.post(f'/csr/{self.kode}/jadwal/{self.absensi_jadwal.id}/absensi',
                          json=self.absensi_payload())
        except SessionExpired:
            raise
        except ApiError as exc:
            self.banner.error(exc.field('message') or 'Gagal menyimpan absensi')
            return False
        self.absensi_jadwal = None
        self.mahasiswa, self.absensi = [], {}
        self.close_modal()
        return True

    def to_dict(self):
        d = super().to_dict()
        d.update({
            'kelompok_kecil': self.kelompok_kecil,
            'kategori_list': self.kategori_list,
            'labels': CSR_LABELS,
            'absensi': {
                'jadwal': self.absensi_jadwal.to_dict() if self.absensi_jadwal else None,
                'mahasiswa': self.mahasiswa,
                'hadir': self.absensi,
            },
        })
        return d


class NonBlokNonCSRDetail(_NonBlokDetail):
    base = 'non-blok-non-csr'
    jadwal_key = 'jadwal_non_blok_non_csr'
    kind = 'non_blok_non_csr'

    def __init__(self, api, kode: str, **kwargs):
        super().__init__(api, kode, **kwargs)
        self.kelompok_besar: List[Dict[str, Any]] = []

    def load_kelompok_besar(self) -> List[Dict[str, Any]]:
        """Options for the kelompok besar select; an API failure leaves it empty."""
        if self.mata_kuliah is None:
            return []
        try:
            res = self.api.get('/non-blok-non-csr/kelompok-besar',
                               params={'semester': self.mata_kuliah.semester})
        except SessionExpired:
            raise
        except ApiError as exc:
            logger.info("[non-blok-non-csr] kelompok besar failed: %s", exc.message)
            res = []
        self.kelompok_besar = res if isinstance(res, list) else []
        return self.kelompok_besar

    @staticmethod
    def complete_form(form):
        form = dict(form)
        form.setdefault('jenis_baris', 'materi')
        form.setdefault('use_ruangan', True)
        if form.get('jam_mulai') and form.get('jumlah_sesi'):
            form['jam_selesai'] = hitung_jam_selesai(form['jam_mulai'], form['jumlah_sesi'])
        return form

    def validate(self, form):
        if not form.get('tanggal'):
            return MSG_REQUIRED_WAJIB
        if form.get('jenis_baris') == 'agenda':
            if not form.get('agenda') or (form.get('use_ruangan') and not form.get('ruangan_id')):
                return MSG_REQUIRED_WAJIB
        elif any(not form.get(name) for name in ('jam_mulai', 'jumlah_sesi', 'dosen_id',
                                                   'materi', 'ruangan_id')):
            return MSG_REQUIRED_WAJIB
        return check_tanggal_range(form.get('tanggal'), self.mata_kuliah)

    def payload(self, form):
        use_ruangan = bool(form.get('use_ruangan'))
        return {
            'tanggal': form.get('tanggal'),
            'jam_mulai': form.get('jam_mulai'),
            'jam_selesai': form.get('jam_selesai'),
            'jumlah_sesi': form.get('jumlah_sesi'),
            'jenis_baris': form.get('jenis_baris'),
            'agenda': form.get('agenda') or '',
            'materi': form.get('materi') or '',
            'dosen_id': form.get('dosen_id'),
            'ruangan_id': form.get('ruangan_id') if use_ruangan else None,
            'kelompok_besar_id': form.get('kelompok_besar_id'),
            'use_ruangan': use_ruangan,
        }

    def save(self, form, jadwal_id=None):
        return super().save(self.complete_form(form), jadwal_id)

    def edit_form(self, jadwal_id) -> Dict[str, Any]:
        j = self.find_jadwal(jadwal_id)
        if j is None:
            raise KeyError(jadwal_id)
        tanggal = _to_date(j.tanggal)
        use_ruangan = j.use_ruangan if j.use_ruangan is not None else True
        return {
            'tanggal': tanggal.isoformat() if tanggal else '',
            'jam_mulai': format_jam(j.jam_mulai),
            'jumlah_sesi': j.jumlah_sesi,
            'jam_selesai': format_jam(j.jam_selesai),
            'dosen_id': j.dosen_id,
            'materi': j.materi or '',
            'ruangan_id': j.ruangan_id if use_ruangan else None,
            'jenis_baris': j.jenis_baris,
            'agenda': j.agenda or '',
            'kelompok_besar_id': j.kelompok_besar_id,
            'use_ruangan': use_ruangan,
        }

    def to_dict(self):
        d = super().to_dict()
        d['kelompok_besar'] = self.kelompok_besar
        return d
