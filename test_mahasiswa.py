"""
Unit tests for the mahasiswa list screen
"""
import unittest

from fake_api import FakeApi
from mahasiswa import MahasiswaScreen, periode_of, sanitize_form, gender_display

STUDENTS = [
    {'id': i, 'nim': f'20210{i:05d}', 'name': f'Mahasiswa {i}', 'username': f'mhs{i}',
     'email': f'mhs{i}@umj.ac.id', 'telp': '0812', 'gender': 'L' if i % 2 else 'P',
     'ipk': 3.0, 'status': 'cuti' if i % 5 == 0 else 'aktif',
     'angkatan': '2021' if i <= 12 else '2022', 'semester': 1 + i % 4}
    for i in range(1, 24)
]

FORM = {
    'nim': '2023-0001', 'name': 'Sari', 'username': 'sari', 'telp': '0812 3456',
    'email': 'sari@umj.ac.id', 'gender': 'P', 'ipk': 3.4, 'status': 'aktif',
    'angkatan': '2023', 'password': 'rahasia',
}


class ScreenTestCase(unittest.TestCase):

    def setUp(self):
        self.api = FakeApi().on('GET', '/users', {'data': STUDENTS})
        self.screen = MahasiswaScreen(self.api.client)
        self.screen.load()

    def tearDown(self):
        self.api.close()


class TestHelpers(unittest.TestCase):

    def test_periode_of(self):
        """Odd semesters are Ganjil, even ones Genap"""
        self.assertEqual(periode_of(3), 'Ganjil')
        self.assertEqual(periode_of('4'), 'Genap')
        self.assertIsNone(periode_of(None))
        self.assertIsNone(periode_of(0))

    def test_sanitize_form(self):
        """Numeric text fields keep only digits"""
        clean = sanitize_form(FORM)
        self.assertEqual(clean['nim'], '20230001')
        self.assertEqual(clean['telp'], '08123456')

    def test_gender_display(self):
        """Backend codes are shown as words"""
        self.assertEqual(gender_display('L'), 'Laki-laki')
        self.assertEqual(gender_display(''), '-')


class TestListing(ScreenTestCase):

    def test_page_sizes(self):
        """Page k holds min(P, N-(k-1)P) rows"""
        self.assertEqual(len(self.screen.page_rows()), 10)
        self.screen.pagination.set_page(3)
        self.assertEqual(len(self.screen.page_rows()), 3)

    def test_page_size_change_resets_page(self):
        """Changing the page size returns to page 1"""
        self.screen.pagination.set_page(2)
        self.screen.pagination.set_page_size(20)
        self.assertEqual(self.screen.pagination.page, 1)
        self.assertEqual(len(self.screen.page_rows()), 20)

    def test_filter_change_resets_page(self):
        """Changing a filter returns to page 1"""
        self.screen.pagination.set_page(2)
        self.screen.filters.set('status', 'cuti')
        self.assertEqual(self.screen.pagination.page, 1)
        self.assertEqual([m.id for m in self.screen.filtered()], [5, 10, 15, 20])

    def test_filters_combine_and_clear(self):
        """Filters are AND-ed and clearing them restores every row"""
        self.screen.filters.update({'angkatan': '2022', 'gender': 'Perempuan'})
        self.assertEqual([m.id for m in self.screen.filtered()], [14, 16, 18, 20, 22])
        self.screen.filters.set('periode', 'Genap')
        self.assertTrue(all(m.semester % 2 == 0 for m in self.screen.filtered()))
        self.screen.filters.clear()
        self.assertEqual(len(self.screen.filtered()), len(STUDENTS))

    def test_search(self):
        """Search looks through every field"""
        self.screen.filters.set('search', 'MHS7@')
        self.assertEqual([m.id for m in self.screen.filtered()], [7])

    def test_options(self):
        """Dropdown options come from the loaded rows"""
        options = self.screen.options()
        self.assertEqual(options['semester'], [1, 2, 3, 4])
        self.assertEqual(options['angkatan'], ['2022', '2021'])
        self.assertEqual(options['gender'], ['Laki-laki', 'Perempuan'])

    def test_load_failure(self):
        """A failed load empties the table and shows an error"""
        self.api.on('GET', '/users', {'message': 'boom'}, status=500)
        self.assertEqual(self.screen.load(), [])
        self.assertEqual(self.screen.banner.message, 'Gagal memuat data')


class TestSave(ScreenTestCase):

    def test_create(self):
        """New students are posted with role mahasiswa and a display gender"""
        self.api.on('POST', '/users', {'id': 99})
        self.assertTrue(self.screen.save(FORM))
        body = self.api.last_json('POST', '/users')
        self.assertEqual(body['role'], 'mahasiswa')
        self.assertEqual(body['gender'], 'Perempuan')
        self.assertEqual(body['nim'], '20230001')
        self.assertEqual(self.screen.banner.message, 'Data mahasiswa berhasil ditambahkan.')
        self.assertIsNone(self.screen.modal)

    def test_create_needs_password(self):
        """Creating without a password is refused before any call"""
        form = dict(FORM, password='')
        self.assertFalse(self.screen.save(form))
        self.assertEqual(self.screen.banner.message, 'Password wajib diisi.')
        self.assertEqual(self.api.mutating_calls(), [])

    def test_missing_fields(self):
        """Every missing required field is listed"""
        self.assertFalse(self.screen.save(dict(FORM, name='', email='')))
        self.assertEqual(self.screen.banner.message, 'Field wajib diisi: name, email')

    def test_edit_without_password(self):
        """Edits keep the old password when none is given"""
        self.api.on('PUT', '/users/3', {'id': 3})
        self.assertTrue(self.screen.save(dict(FORM, id=3, password=''), edit=True))
        self.assertNotIn('password', self.api.last_json('PUT', '/users/3'))

    def test_validation_errors_joined(self):
        """Keyed API errors are joined into one message"""
        self.api.on('POST', '/users', {'message': 'invalid', 'errors': {
            'nim': ['NIM sudah dipakai'], 'email': ['Email sudah dipakai'],
        }}, status=422)
        self.assertFalse(self.screen.save(FORM))
        self.assertEqual(self.screen.banner.message, 'NIM sudah dipakai, Email sudah dipakai')


class TestDelete(ScreenTestCase):

    def test_delete(self):
        """Deleting reloads the table"""
        self.api.on('DELETE', '/users/1', None)
        self.assertTrue(self.screen.delete(1))
        self.assertEqual(self.screen.banner.message, 'Data mahasiswa berhasil dihapus.')

    def test_bulk_delete_partial(self):
        """One failed delete does not stop the others"""
        self.api.on('DELETE', '/users/1', None)
        self.api.on('DELETE', '/users/3', None)
        result = self.screen.bulk_delete([1, 2, 3])
        self.assertEqual(sorted(result['succeeded']), ['1', '3'])
        self.assertEqual(result['failed'], ['2'])
        self.assertEqual(len(self.api.requests('DELETE', '/users/2')), 1)
        self.assertEqual(self.screen.banner.kind, 'error')
        self.assertIn('1 data gagal dihapus', self.screen.banner.message)


if __name__ == '__main__':
    unittest.main(verbosity=2)
