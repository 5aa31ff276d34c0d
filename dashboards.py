"""
Dashboards for lecturers (dosen) and the academic team (tim akademik).
"""
import copy
import logging
from concurrent.futures import CancelledError
from datetime import datetime
from typing import Any, Dict, List

from api_client import ApiError, SessionExpired, unwrap
from models import KONFIRMASI_BISA, KONFIRMASI_TIDAK_BISA, jadwal_from_payload, konfirmasi_path
from view_state import ScreenState

logger = logging.getLogger(__name__)

SEMESTER_TABS = ('ganjil', 'genap', 'all')


def merge_blok_assignments(assignments: List[Dict[str, Any]], semester: str = 'all') -> Dict[str, List[Dict[str, Any]]]:
    """
    Group blok assignments by semester type.

    Entries of the same blok within one semester type are merged: their PBL
    assignments are combined and de-duplicated by pbl_id, and
    semester_display lists every semester number seen ("1, 3").
    """
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for raw in assignments:
        if semester != 'all' and raw.get('semester_type') != semester:
            continue
        blok = copy.deepcopy(raw)
        bucket = grouped.setdefault(blok.get('semester_type'), [])
        existing = next((b for b in bucket if b.get('blok') == blok.get('blok')), None)
        if existing is None:
            blok['pbl_assignments'] = list(blok.get('pbl_assignments') or [])
            bucket.append(blok)
            continue

        existing['pbl_assignments'].extend(blok.get('pbl_assignments') or [])
        if existing.get('semester') != blok.get('semester'):
            shown = existing.get('semester_display') or str(existing.get('semester'))
            if str(blok.get('semester')) not in shown.split(', '):
                shown = f"{shown}, {blok.get('semester')}"
            existing['semester_display'] = shown

    for bucket in grouped.values():
        for blok in bucket:
            unique, seen = [], set()
            for assignment in blok['pbl_assignments']:
                if assignment.get('pbl_id') in seen:
                    continue
                seen.add(assignment.get('pbl_id'))
                unique.append(assignment)
            blok['pbl_assignments'] = unique
            blok['total_pbl'] = len(unique)
        bucket.sort(key=lambda b: b.get('blok') or 0)
    return grouped


class DosenDashboard(ScreenState):
    def __init__(self, api, user: Dict[str, Any], semester: str = 'ganjil', **kwargs):
        super().__init__(**kwargs)
        if semester not in SEMESTER_TABS:
            raise ValueError(f'Unknown semester tab: {semester}')
        self.api = api
        self.user = user
        self.semester = semester
        self.jadwal = []
        self.notifications: List[Dict[str, Any]] = []
        self.blok_assignments: List[Dict[str, Any]] = []

    @property
    def dosen_id(self):
        return self.user['id']

    def load(self) -> bool:
        generation = self.guard.begin()
        self.loading = True
        future = self.api.gather_async({
            'jadwal': f'/jadwal-pbl/dosen/{self.dosen_id}',
            'notifications': f'/notifications/dosen/{self.dosen_id}',
            'blok': f'/dosen/{self.dosen_id}/pbl-assignments',
        }, strict=True)
        self.guard.attach(generation, future)
        try:
            results = future.result()
        except CancelledError:
            return False
        except SessionExpired:
            raise
        except ApiError as exc:
            if self.guard.accept(generation):
                logger.warning("[DashboardDosen] load failed: %s", exc.message)
                self.banner.error('Gagal memuat data dashboard')
                self.loading = False
            return False

        if not self.guard.accept(generation):
            return False
        self.jadwal = [jadwal_from_payload(j, 'pbl') for j in unwrap(results['jadwal'], []) or []]
        self.notifications = list(unwrap(results['notifications'], []) or [])
        self.blok_assignments = list(unwrap(results['blok'], []) or [])
        self.loading = False
        return True

    def konfirmasi(self, jadwal_id, status: str, kind: str = 'pbl') -> bool:
        if status not in (KONFIRMASI_BISA, KONFIRMASI_TIDAK_BISA):
            raise ValueError(f'Invalid confirmation status: {status}')
        try:
            self.api.put(konfirmasi_path(kind, jadwal_id), json={'status': status})
        except ApiError as exc:
            logger.warning("[DashboardDosen] konfirmasi %s %s failed: %s", kind, jadwal_id, exc.message)
            self.banner.error('Gagal mengkonfirmasi jadwal')
            return False

        self.load()
        label = 'Bisa' if status == KONFIRMASI_BISA else 'Tidak Bisa'
        self.notifications.append({
            'id': int(datetime.now().timestamp() * 1000),
            'title': 'Konfirmasi Berhasil',
            'message': f'Jadwal berhasil dikonfirmasi: {label}',
            'type': 'success',
            'is_read': False,
            'created_at': datetime.now().isoformat(),
        })
        self.banner.success(f'Jadwal berhasil dikonfirmasi: {label}')
        return True

    # Notification actions leave the list untouched when the API refuses them.

    def mark_read(self, notification_id) -> bool:
        try:
            self.api.put(f'/notifications/{notification_id}/read')
        except ApiError as exc:
            logger.info("[DashboardDosen] mark read %s failed: %s", notification_id, exc.message)
            return False
        for n in self.notifications:
            if str(n.get('id')) == str(notification_id):
                n['is_read'] = True
        return True

    def clear_notifications(self) -> bool:
        try:
            self.api.delete(f'/notifications/dosen/{self.dosen_id}/clear-all')
        except ApiError as exc:
            logger.info("[DashboardDosen] clear notifications failed: %s", exc.message)
            return False
        self.notifications = []
        return True

    def delete_notification(self, notification_id) -> bool:
        try:
            self.api.delete(f'/notifications/{notification_id}')
        except ApiError as exc:
            logger.info("[DashboardDosen] delete notification %s failed: %s", notification_id, exc.message)
            return False
        self.notifications = [n for n in self.notifications if str(n.get('id')) != str(notification_id)]
        return True

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.get('is_read'))

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({
            'semester': self.semester,
            'jadwal': [j.to_dict() for j in self.jadwal],
            'notifications': self.notifications,
            'unread_count': self.unread_count,
            'blok': merge_blok_assignments(self.blok_assignments, self.semester),
        })
        return d


# --- Tim Akademik ---

SEMESTER_KINDS = ('reguler', 'antara')

DEFAULT_STATS = {
    'totalMataKuliah': 0,
    'totalKelas': 0,
    'totalRuangan': 0,
    'totalDosen': 0,
    'totalMahasiswa': 0,
    'totalJadwalAktif': 0,
    'attendanceStats': {
        'overall_rate': 0, 'pbl_rate': 0, 'journal_rate': 0, 'csr_rate': 0,
        'total_students': 0, 'total_sessions': 0, 'attended_sessions': 0,
    },
    'assessmentStats': {
        'total_pbl_assessments': 0, 'total_journal_assessments': 0, 'pending_pbl': 0,
        'pending_journal': 0, 'completion_rate': 0, 'average_score': 0,
        'total_assessments': 0, 'completed_assessments': 0,
    },
    'todaySchedule': [],
    'recentActivities': [],
    'academicNotifications': [],
    'academicOverview': {
        'current_semester': '', 'current_tahun_ajaran': '', 'semester_progress': 0,
        'active_blocks': [], 'upcoming_deadlines': [],
    },
    'scheduleStats': {
        'kuliah_besar': 0, 'pbl': 0, 'jurnal_reading': 0, 'csr': 0,
        'non_blok_non_csr': 0, 'praktikum': 0, 'agenda_khusus': 0,
    },
    'lowAttendanceAlerts': [],
}


def with_defaults(stats: Dict[str, Any], defaults: Dict[str, Any] = DEFAULT_STATS) -> Dict[str, Any]:
    """Fill keys the API left out; nested dicts are filled recursively."""
    merged = copy.deepcopy(defaults)
    for key, value in (stats or {}).items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = with_defaults(value, merged[key])
        elif value is not None:
            merged[key] = value
    return merged


def attendance_color(rate) -> str:
    if rate >= 90:
        return 'green'
    if rate >= 80:
        return 'yellow'
    return 'red'


def assessment_color(rate) -> str:
    if rate >= 90:
        return 'green'
    if rate >= 70:
        return 'yellow'
    return 'red'


class TimAkademikDashboard(ScreenState):
    """
    Academic team dashboard. The attendance, assessment and schedule tabs
    each switch between reguler and antara; every combination is cached
    under "attendance-assessment-schedule".
    """

    def __init__(self, api, attendance='reguler', assessment='reguler', schedule='reguler',
                 cache=None, now=datetime.now, **kwargs):
        super().__init__(**kwargs)
        for value in (attendance, assessment, schedule):
            if value not in SEMESTER_KINDS:
                raise ValueError(f'Unknown semester kind: {value}')
        self.api = api
        self.attendance = attendance
        self.assessment = assessment
        self.schedule = schedule
        self.cache = cache
        self._now = now
        self.stats = with_defaults({})

    @property
    def cache_key(self) -> str:
        return f'{self.attendance}-{self.assessment}-{self.schedule}'

    def load(self, initial: bool = False) -> bool:
        if not initial and self.cache is not None:
            cached = self.cache.get(self.cache_key)
            if cached is not None:
                self.stats = with_defaults(cached)
                return True

        self.loading = True
        try:
            payload = self.api.get('/dashboard-tim-akademik', params={
                'attendance_semester': self.attendance,
                'assessment_semester': self.assessment,
                'schedule_semester': self.schedule,
            }) or {}
        except SessionExpired:
            raise
        except ApiError as exc:
            logger.warning("[DashboardTimAkademik] load failed: %s", exc.message)
            self.banner.error(exc.field('message') or 'Gagal memuat data dashboard')
            return False
        finally:
            self.loading = False

        if self.cache is not None:
            self.cache.set(self.cache_key, payload)
        self.stats = with_defaults(payload)
        return True

    def clock(self) -> str:
        return self._now().strftime('%H:%M:%S')

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        attendance_rate = self.stats['attendanceStats'].get('overall_rate') or 0
        completion_rate = self.stats['assessmentStats'].get('completion_rate') or 0
        d.update({
            'tabs': {
                'attendance': self.attendance,
                'assessment': self.assessment,
                'schedule': self.schedule,
            },
            'stats': self.stats,
            'attendance_color': attendance_color(attendance_rate),
            'assessment_color': assessment_color(completion_rate),
            'clock': self.clock(),
        })
        return d
