"""
PBL board: lecturer (dosen) to PBL module assignment.

The board keeps a local mirror of {pbl_id: [Dosen]} built from the API.
A drop is checked locally first; accepted drops update the mirror
optimistically, call the API, and then always refetch everything, so the
mirror never stays ahead of (or behind) the server. A failed call is
rolled back by that same refetch.
"""
import logging
import time
from concurrent.futures import CancelledError
from typing import Any, Dict, List, Optional

from blinker import signal

from api_client import ApiError, SessionExpired, unwrap
from matching import is_standby, keahlian_match, role_match
from models import PBL, Dosen, KelompokKecil, MataKuliah
from view_state import ScreenState

logger = logging.getLogger(__name__)

# Sent after every assignment change; receivers refresh reporting views.
pbl_assignment_updated = signal('pbl-assignment-updated')

SESSIONS_PER_ASSIGNMENT = 5
MAX_MENGAJAR_SESSIONS = 5
WORKLOAD_WARNING_THRESHOLD = 3


class DropDecision:
    """Outcome of the local checks for dropping a dosen on a PBL module."""

    def __init__(self, allowed=True, error=None, warnings=None, needs_confirmation=False):
        self.allowed = allowed
        self.error = error
        self.warnings: List[str] = warnings or []
        self.needs_confirmation = needs_confirmation
        self.applied = False

    @classmethod
    def reject(cls, error, needs_confirmation=False):
        return cls(False, error, needs_confirmation=needs_confirmation)

    def to_dict(self):
        return {
            'allowed': self.allowed,
            'applied': self.applied,
            'error': self.error,
            'warnings': self.warnings,
            'needs_confirmation': self.needs_confirmation,
        }


def _semester_number(value) -> Optional[int]:
    if value in (None, ''):
        return None
    text = str(value).strip().lower()
    if text == 'ganjil':
        return 1
    if text == 'genap':
        return 2
    try:
        return int(text)
    except ValueError:
        return None


def _pbl_key(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


class PBLBoard(ScreenState):
    def __init__(self, api, blok=None, **kwargs):
        super().__init__(**kwargs)
        self.api = api
        self.blok = blok
        self.mata_kuliah: List[MataKuliah] = []
        self.pbl_data: Dict[str, List[PBL]] = {}
        self.dosen_list: List[Dosen] = []
        self.kelompok_kecil: List[KelompokKecil] = []
        self.assigned: Dict[Any, List[Dosen]] = {}
        self.reporting: List[Dict[str, Any]] = []

    # --- loading ---

    def _load(self) -> Dict[str, Any]:
        results = self.api.gather({
            'pbls': '/pbls/all',
            'dosen': lambda: self.api.get('/users', params={'role': 'dosen'}),
            'kelompok_kecil': '/kelompok-kecil',
        }, defaults={'pbls': {}})
        if 'pbls' in results.failed:
            raise results.failed['pbls']

        pbls = unwrap(results['pbls'], {}) or {}
        mata_kuliah, pbl_data = [], {}
        for kode, item in pbls.items():
            mata_kuliah.append(MataKuliah.from_payload(item.get('mata_kuliah')))
            pbl_data[kode] = PBL.many(item.get('pbls'))
            for pbl in pbl_data[kode]:
                pbl.mata_kuliah_kode = pbl.mata_kuliah_kode or kode

        pbl_ids = [p.id for plist in pbl_data.values() for p in plist if p.id is not None]
        assigned = {}
        if pbl_ids:
            try:
                raw = unwrap(self.api.post('/pbls/assigned-dosen-batch', json={'pbl_ids': pbl_ids}), {}) or {}
                assigned = {_pbl_key(k): Dosen.many(v) for k, v in raw.items()}
            except ApiError as exc:
                logger.warning("[PBL] assigned dosen batch failed: %s", exc.message)

        return {
            'mata_kuliah': mata_kuliah,
            'pbl_data': pbl_data,
            'dosen_list': Dosen.many(unwrap(results['dosen'], [])),
            'kelompok_kecil': KelompokKecil.many(unwrap(results['kelompok_kecil'], [])),
            'assigned': assigned,
        }

    def fetch_all(self) -> bool:
        """
        Reload every mirror. Returns False when this load was superseded by
        a newer one (its result is discarded) or failed.
        """
        generation = self.guard.begin()
        self.loading = True
        future = self.api.submit(self._load)
        self.guard.attach(generation, future)
        try:
            snapshot = future.result()
        except CancelledError:
            return False
        except SessionExpired:
            raise
        except ApiError as exc:
            if not self.guard.accept(generation):
                return False
            logger.warning("[PBL] load failed: %s", exc.message)
            self.banner.error('Gagal memuat data PBL/dosen')
            self.mata_kuliah, self.pbl_data, self.dosen_list, self.assigned = [], {}, [], {}
            self.loading = False
            return False

        if not self.guard.accept(generation):
            logger.info("[PBL] discarding superseded load %s", generation)
            return False
        for name, value in snapshot.items():
            setattr(self, name, value)
        self.loading = False
        return True

    # --- lookups ---

    def visible_mata_kuliah(self) -> List[MataKuliah]:
        if self.blok in (None, '', 'semua'):
            return list(self.mata_kuliah)
        return [mk for mk in self.mata_kuliah if str(mk.blok) == str(self.blok)]

    def find_pbl(self, pbl_id) -> Optional[PBL]:
        key = _pbl_key(pbl_id)
        for plist in self.pbl_data.values():
            for pbl in plist:
                if _pbl_key(pbl.id) == key:
                    return pbl
        return None

    def find_mata_kuliah(self, kode) -> Optional[MataKuliah]:
        return next((mk for mk in self.mata_kuliah if mk.kode == kode), None)

    def find_dosen(self, dosen_id) -> Optional[Dosen]:
        for d in self.dosen_list:
            if str(d.id) == str(dosen_id):
                return d
        for dlist in self.assigned.values():
            for d in dlist:
                if str(d.id) == str(dosen_id):
                    return d
        return None

    def assigned_to(self, pbl_id) -> List[Dosen]:
        return self.assigned.get(_pbl_key(pbl_id), [])

    def _is_assigned(self, dosen_id, pbl_id) -> bool:
        return any(str(d.id) == str(dosen_id) for d in self.assigned_to(pbl_id))

    def mirror_assignment_count(self, dosen_id) -> int:
        return sum(1 for pbl_id in self.assigned if self._is_assigned(dosen_id, pbl_id))

    def _assigned_in_blok(self, dosen_id, blok, skip_pbl_id=None) -> bool:
        """Whether the lecturer holds a module of any course in `blok`, any semester."""
        skip = _pbl_key(skip_pbl_id) if skip_pbl_id is not None else None
        for mk in self.mata_kuliah:
            if str(mk.blok) != str(blok):
                continue
            for pbl in self.pbl_data.get(mk.kode, []):
                if _pbl_key(pbl.id) != skip and self._is_assigned(dosen_id, pbl.id):
                    return True
        return False

    # --- drop validation ---

    def check_drop(self, dosen: Dosen, target_pbl_id, source_pbl_id=None,
                   confirm_mismatch=False) -> DropDecision:
        """Local checks for a drop, in the order they are reported to the user."""
        pbl = self.find_pbl(target_pbl_id)
        if pbl is None:
            return DropDecision.reject('PBL tidak ditemukan')
        mk = self.find_mata_kuliah(pbl.mata_kuliah_kode)
        if mk is None:
            return DropDecision.reject('Mata kuliah PBL tidak ditemukan')

        if self._is_assigned(dosen.id, target_pbl_id):
            return DropDecision.reject('Dosen sudah ada di PBL ini.')

        standby = is_standby(dosen.keahlian)
        decision = DropDecision()

        if not keahlian_match(dosen, mk):
            message = (f'Keahlian dosen {dosen.name} tidak sesuai dengan keahlian yang '
                       f'dibutuhkan {mk.nama} ({mk.kode}).')
            if not confirm_mismatch:
                return DropDecision.reject(message, needs_confirmation=True)
            decision.warnings.append(message)

        moving = source_pbl_id not in (None, '') and self._is_assigned(dosen.id, source_pbl_id)
        if (dosen.peran_utama or '').lower() == 'dosen_mengajar':
            held = max(dosen.pbl_assignment_count, self.mirror_assignment_count(dosen.id))
            if moving:
                held -= 1
            sessions = held * SESSIONS_PER_ASSIGNMENT
            if sessions >= MAX_MENGAJAR_SESSIONS:
                return DropDecision.reject(
                    f'Dosen {dosen.name} sudah mendapat sesi mengajar {sessions}×50 menit. '
                    f'Dosen mengajar maksimal hanya boleh mendapat 1 assignment (5×50 menit) '
                    f'untuk distribusi yang adil.')

        if mk.blok and self._assigned_in_blok(dosen.id, mk.blok,
                                              skip_pbl_id=source_pbl_id if moving else None):
            return DropDecision.reject(
                f'Dosen {dosen.name} sudah di-assign ke Blok {mk.blok}. Satu dosen tidak boleh '
                f'di-assign ke blok yang sama untuk distribusi yang adil.')

        if not standby:
            matched, _ = role_match(dosen, mk)
            if not matched:
                decision.warnings.append(
                    f'Dosen {dosen.name} tidak memiliki peran yang sesuai untuk {mk.nama} '
                    f'({mk.kode}). Keahlian sesuai tetapi peran tidak cocok.')
            if dosen.pbl_assignment_count > WORKLOAD_WARNING_THRESHOLD:
                decision.warnings.append(
                    f'Dosen {dosen.name} sudah memiliki {dosen.pbl_assignment_count} assignment. '
                    f'Pertimbangkan untuk menggunakan dosen dengan beban kerja yang lebih rendah '
                    f'untuk distribusi yang adil.')
        return decision

    # --- mutations ---

    def move_dosen(self, dosen_id, target_pbl_id, source_pbl_id=None,
                   confirm_mismatch=False) -> DropDecision:
        dosen = self.find_dosen(dosen_id)
        if dosen is None:
            decision = DropDecision.reject('Dosen tidak ditemukan')
            self.banner.error(decision.error)
            return decision

        decision = self.check_drop(dosen, target_pbl_id, source_pbl_id, confirm_mismatch)
        if not decision.allowed:
            self.banner.error(decision.error)
            return decision

        moving = source_pbl_id not in (None, '') and self._is_assigned(dosen.id, source_pbl_id)
        if moving:
            key = _pbl_key(source_pbl_id)
            self.assigned[key] = [d for d in self.assigned_to(key) if str(d.id) != str(dosen.id)]
        self.assigned.setdefault(_pbl_key(target_pbl_id), []).append(dosen)

        try:
            if moving:
                self.api.delete(f'/pbls/{source_pbl_id}/unassign-dosen/{dosen.id}')
            self.api.post(f'/pbls/{target_pbl_id}/assign-dosen', json={'dosen_id': dosen.id})
        except ApiError as exc:
            logger.warning("[PBL] assign dosen %s -> %s failed: %s", dosen.id, target_pbl_id, exc.message)
            decision.error = exc.field('message') or 'Gagal assign dosen'
            self.banner.error(decision.error)
            self.fetch_all()
            return decision

        decision.applied = True
        self.fetch_all()
        if decision.warnings:
            self.banner.warning(' '.join(decision.warnings))
        else:
            self.banner.success(f'{dosen.name} berhasil di-assign ke PBL.')
        self._assignment_changed()
        return decision

    def unassign_dosen(self, dosen_id, pbl_id) -> bool:
        key = _pbl_key(pbl_id)
        self.assigned[key] = [d for d in self.assigned_to(key) if str(d.id) != str(dosen_id)]
        try:
            self.api.delete(f'/pbls/{pbl_id}/unassign-dosen/{dosen_id}')
        except ApiError as exc:
            logger.warning("[PBL] unassign dosen %s from %s failed: %s", dosen_id, pbl_id, exc.message)
            self.banner.error(exc.field('message') or 'Gagal unassign dosen')
            self.fetch_all()
            return False
        self.fetch_all()
        self.banner.success('Dosen berhasil di-unassign dari PBL.')
        self._assignment_changed()
        return True

    def _assignment_changed(self):
        try:
            self.reporting = unwrap(self.api.get('/reporting/dosen-pbl'), []) or []
        except ApiError as exc:
            logger.info("[PBL] reporting refresh failed: %s", exc.message)
        pbl_assignment_updated.send(self, timestamp=time.time())

    # --- PBL modules ---

    def next_modul_ke(self, kode) -> int:
        used = []
        for pbl in self.pbl_data.get(kode, []):
            try:
                used.append(int(pbl.modul_ke))
            except (TypeError, ValueError):
                continue
        return max(used) + 1 if used else 1

    def add_pbl(self, kode, modul_ke, nama_modul) -> bool:
        try:
            self.api.post(f'/mata-kuliah/{kode}/pbls', json={'modul_ke': modul_ke, 'nama_modul': nama_modul})
        except ApiError as exc:
            self.banner.error(exc.field('message') or 'Gagal menambah PBL')
            return False
        self.fetch_all()
        self.banner.success('PBL berhasil ditambahkan.')
        return True

    def update_pbl(self, pbl_id, kode, modul_ke, nama_modul) -> bool:
        try:
            self.api.put(f'/pbls/{pbl_id}', json={
                'mata_kuliah_kode': kode, 'modul_ke': modul_ke, 'nama_modul': nama_modul,
            })
        except ApiError as exc:
            self.banner.error(exc.field('message') or 'Gagal memperbarui PBL')
            return False
        self.fetch_all()
        self.banner.success('PBL berhasil diperbarui.')
        return True

    def delete_pbl(self, pbl_id) -> bool:
        try:
            self.api.delete(f'/pbls/{pbl_id}')
        except ApiError as exc:
            self.banner.error(exc.field('message') or 'Gagal menghapus PBL')
            return False
        self.fetch_all()
        self.banner.success('PBL berhasil dihapus.')
        return True

    # --- read models ---

    def dosen_lists(self, search: str = '') -> Dict[str, List[Dosen]]:
        """Split lecturers into standby and regular, filtered by name, NID or expertise."""
        q = (search or '').strip().lower()

        def matches(d):
            if not q:
                return True
            return (q in (d.name or '').lower() or q in str(d.nid or '').lower()
                    or any(q in k.lower() for k in d.keahlian))

        standby = [d for d in self.dosen_list if is_standby(d.keahlian) and matches(d)]
        regular = [d for d in self.dosen_list if not is_standby(d.keahlian) and matches(d)]
        return {'standby': standby, 'regular': regular}

    def statistics(self) -> Dict[str, int]:
        courses = self.visible_mata_kuliah()
        keahlian_count = sum(len(mk.keahlian_required) for mk in courses)

        groups = set()
        for mk in courses:
            for kk in self.kelompok_kecil:
                if _semester_number(kk.semester) == _semester_number(mk.semester):
                    groups.add(f'{kk.semester}__{kk.nama_kelompok}')

        ketua = anggota = mengajar = 0
        for mk in courses:
            seen = set()
            for pbl in self.pbl_data.get(mk.kode, []):
                for dosen in self.assigned_to(pbl.id):
                    if dosen.id in seen:
                        continue
                    seen.add(dosen.id)
                    peran = next((
                        p for p in dosen.dosen_peran
                        if (p.get('mata_kuliah_kode') == mk.kode or p.get('mata_kuliah_nama') == mk.nama)
                        and _semester_number(p.get('semester')) == _semester_number(mk.semester)
                    ), None)
                    tipe = (peran or {}).get('tipe_peran')
                    if tipe == 'koordinator':
                        ketua += 1
                    elif tipe == 'tim_blok':
                        anggota += 1
                    else:
                        mengajar += 1

        return {
            'mata_kuliah': len(courses),
            'keahlian': keahlian_count,
            'kelompok_kecil': len(groups),
            'peran_ketua': ketua,
            'peran_anggota': anggota,
            'dosen_mengajar': mengajar,
            'total_dosen': len(self.dosen_list),
        }

    def to_dict(self, search: str = '') -> Dict[str, Any]:
        lists = self.dosen_lists(search)
        d = super().to_dict()
        d.update({
            'mata_kuliah': [
                {
                    **mk.to_dict(),
                    'pbls': [
                        {**p.to_dict(), 'dosen': [x.to_dict() for x in self.assigned_to(p.id)]}
                        for p in self.pbl_data.get(mk.kode, [])
                    ],
                }
                for mk in self.visible_mata_kuliah()
            ],
            'standby_dosen': [x.to_dict() for x in lists['standby']],
            'regular_dosen': [x.to_dict() for x in lists['regular']],
            'statistics': self.statistics(),
        })
        return d
