from typing import Any, Dict, List

from matching import parse_keahlian


class BaseModel:
    """
    Record mirrored from an API payload.

    Every key of the payload becomes an attribute; keys listed in
    `_defaults` are always present even if the endpoint omits them.
    """
    _defaults: Dict[str, Any] = {}

    def __init__(self, **kwargs):
        for k, v in self._defaults.items():
            setattr(self, k, list(v) if isinstance(v, list) else v)
        for k, v in kwargs.items():
            setattr(self, k, v)

    @classmethod
    def from_payload(cls, payload):
        if isinstance(payload, cls):
            return payload
        return cls(**(payload or {}))

    @classmethod
    def many(cls, payloads) -> List['BaseModel']:
        return [cls.from_payload(p) for p in payloads or []]

    def to_dict(self) -> Dict[str, Any]:
        return self.__dict__.copy()

    def get(self, key, default=None):
        return getattr(self, key, default)

    def __repr__(self):
        return f"<{self.__class__.__name__} {getattr(self, 'id', None)!r}>"


# --- Model definitions ---

class MataKuliah(BaseModel):
    _defaults = {
        'kode': '', 'nama': '', 'semester': None, 'periode': '', 'kurikulum': None,
        'jenis': '', 'tanggal_mulai': None, 'tanggal_akhir': None, 'blok': None,
        'durasi_minggu': None, 'keahlian_required': [], 'tipe_non_block': None,
    }

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.keahlian_required = parse_keahlian(self.keahlian_required)

    def __repr__(self):
        return f"<MataKuliah {self.kode}>"


class PBL(BaseModel):
    _defaults = {'id': None, 'mata_kuliah_kode': '', 'modul_ke': None, 'nama_modul': ''}


class Dosen(BaseModel):
    _defaults = {
        'id': None, 'name': '', 'nid': '', 'keahlian': [], 'peran_utama': None,
        'matkul_ketua_nama': None, 'matkul_ketua_semester': None,
        'matkul_anggota_nama': None, 'matkul_anggota_semester': None,
        'peran_kurikulum_mengajar': None, 'dosen_peran': [],
        'pbl_assignment_count': 0,
    }

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.keahlian = parse_keahlian(self.keahlian)
        self.pbl_assignment_count = int(self.pbl_assignment_count or 0)
        self.dosen_peran = list(self.dosen_peran or [])


class Mahasiswa(BaseModel):
    _defaults = {
        'id': None, 'nim': '', 'name': '', 'username': '', 'email': '', 'telp': '',
        'gender': '', 'ipk': None, 'status': 'aktif', 'angkatan': '', 'semester': None,
    }


class KelompokKecil(BaseModel):
    _defaults = {'id': None, 'nama_kelompok': '', 'semester': None, 'mahasiswa': []}


# --- Schedule slots ---

KONFIRMASI_BELUM = 'belum_konfirmasi'
KONFIRMASI_BISA = 'bisa'
KONFIRMASI_TIDAK_BISA = 'tidak_bisa'
KONFIRMASI_STATUSES = (KONFIRMASI_BELUM, KONFIRMASI_BISA, KONFIRMASI_TIDAK_BISA)

# kind -> API path prefix of the confirmation endpoint
KONFIRMASI_PATHS = {
    'pbl': 'jadwal-pbl',
    'kuliah_besar': 'jadwal-kuliah-besar',
    'praktikum': 'jadwal-praktikum',
    'agenda_khusus': 'jadwal-agenda-khusus',
    'jurnal_reading': 'jadwal-jurnal',
    'jurnal': 'jadwal-jurnal',
}


def konfirmasi_path(kind, jadwal_id) -> str:
    prefix = KONFIRMASI_PATHS.get(kind, KONFIRMASI_PATHS['pbl'])
    return f"/{prefix}/{jadwal_id}/konfirmasi"


class Jadwal(BaseModel):
    kind = None
    _defaults = {
        'id': None, 'tanggal': None, 'jam_mulai': '', 'jam_selesai': '',
        'jumlah_sesi': 1, 'status_konfirmasi': KONFIRMASI_BELUM,
        'dosen_id': None, 'ruangan_id': None,
    }

    def to_dict(self):
        d = super().to_dict()
        d['kind'] = self.kind
        return d

    @property
    def needs_konfirmasi(self):
        return self.status_konfirmasi == KONFIRMASI_BELUM


class JadwalPBL(Jadwal):
    kind = 'pbl'
    _defaults = dict(Jadwal._defaults, modul_pbl_id=None, kelompok_kecil_id=None, pbl_tipe=None)


class JadwalKuliahBesar(Jadwal):
    kind = 'kuliah_besar'
    _defaults = dict(Jadwal._defaults, materi='', topik='', kelompok_besar_id=None)


class JadwalPraktikum(Jadwal):
    kind = 'praktikum'
    _defaults = dict(Jadwal._defaults, materi='', topik='', kelas_praktikum='')


class JadwalJurnalReading(Jadwal):
    kind = 'jurnal_reading'
    _defaults = dict(Jadwal._defaults, topik='', kelompok_kecil_id=None, file_jurnal=None)


class JadwalCSR(Jadwal):
    kind = 'csr'
    _defaults = dict(Jadwal._defaults, jenis_csr='reguler', topik='', kategori_id=None,
                     kelompok_kecil_id=None)


class JadwalNonBlokNonCSR(Jadwal):
    kind = 'non_blok_non_csr'
    _defaults = dict(Jadwal._defaults, jenis_baris='materi', agenda='', materi='',
                     kelompok_besar_id=None, use_ruangan=True)


class JadwalAgendaKhusus(Jadwal):
    kind = 'agenda_khusus'
    _defaults = dict(Jadwal._defaults, agenda='', kelompok_besar_id=None, use_ruangan=True)


JADWAL_KINDS = {
    cls.kind: cls for cls in (
        JadwalPBL, JadwalKuliahBesar, JadwalPraktikum, JadwalJurnalReading,
        JadwalCSR, JadwalNonBlokNonCSR, JadwalAgendaKhusus,
    )
}


def jadwal_from_payload(payload, kind=None) -> Jadwal:
    """Build the schedule slot variant named by `kind` (or payload['kind'])."""
    data = dict(payload or {})
    kind = kind or data.pop('kind', None) or data.pop('jenis_jadwal', None)
    data.pop('kind', None)
    try:
        cls = JADWAL_KINDS[kind]
    except KeyError:
        raise ValueError(f'Unknown schedule kind: {kind!r}')
    return cls(**data)
