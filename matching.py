"""
Expertise and role matching between lecturers (dosen) and courses.

All functions are pure: they take plain dicts / model objects and return
values, so the PBL board and the tests can use them without a request
context.
"""
import json
from typing import Any, Iterable, List, Tuple

STANDBY = 'standby'


def parse_keahlian(value: Any) -> List[str]:
    """
    Normalize an expertise field into a list of stripped strings.

    The API sends expertise as a list, a JSON array string, or a
    comma separated string depending on the endpoint.
    """
    if value is None or value == '':
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    text = str(value).strip()
    if text.startswith('['):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]
    return [item.strip() for item in text.split(',') if item.strip()]


def is_standby(keahlian: Any) -> bool:
    return any(STANDBY in item.lower() for item in parse_keahlian(keahlian))


def fuzzy_match(a: str, b: str) -> bool:
    """
    Loose, case-insensitive overlap between two strings.

    True when either string contains the other, or when any word of one
    occurs inside the other.
    """
    a = (a or '').strip().lower()
    b = (b or '').strip().lower()
    if not a or not b:
        return False
    if a in b or b in a:
        return True
    if any(word in b for word in a.split()):
        return True
    return any(word in a for word in b.split())


def keahlian_score(required: Iterable[str], offered: Iterable[str]) -> int:
    """Number of required expertise strings that overlap any offered one."""
    offered = list(offered)
    return sum(1 for r in required if any(fuzzy_match(r, o) for o in offered))


def keahlian_overlaps(required: Any, offered: Any) -> bool:
    required = parse_keahlian(required)
    offered = parse_keahlian(offered)
    return keahlian_score(required, offered) > 0


def keahlian_match(dosen, mata_kuliah) -> bool:
    """Standby lecturers are exempt from expertise checks."""
    if is_standby(dosen.keahlian):
        return True
    return keahlian_overlaps(mata_kuliah.keahlian_required, dosen.keahlian)


def _course_match(text, mata_kuliah) -> bool:
    if not text:
        return False
    return fuzzy_match(text, mata_kuliah.nama) or fuzzy_match(text, mata_kuliah.kode)


def _same_semester(a, b) -> bool:
    if a in (None, '') or b in (None, ''):
        return False
    return str(a).strip() == str(b).strip()


def role_match(dosen, mata_kuliah) -> Tuple[bool, str]:
    """
    Check whether the lecturer's primary role fits the course.

    Returns (matched, reason).
    """
    peran = (dosen.peran_utama or '').lower()

    if peran == 'ketua':
        if _course_match(dosen.matkul_ketua_nama, mata_kuliah) and \
                _same_semester(dosen.matkul_ketua_semester, mata_kuliah.semester):
            return True, f'Ketua untuk {mata_kuliah.nama} Semester {mata_kuliah.semester}'
        return False, 'Ketua untuk mata kuliah atau semester lain'

    if peran == 'anggota':
        if _course_match(dosen.matkul_anggota_nama, mata_kuliah) and \
                _same_semester(dosen.matkul_anggota_semester, mata_kuliah.semester):
            return True, f'Anggota untuk {mata_kuliah.nama} Semester {mata_kuliah.semester}'
        return False, 'Anggota untuk mata kuliah atau semester lain'

    if peran == 'dosen_mengajar':
        if _course_match(dosen.peran_kurikulum_mengajar, mata_kuliah):
            return True, f'Dosen Mengajar untuk {mata_kuliah.nama}'
        return False, 'Peran kurikulum mengajar tidak sesuai'

    return False, 'Tidak memiliki peran utama'
