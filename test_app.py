"""
Tests for the Flask routes: authentication, roles and JSON error handling
"""
import io
import unittest
from unittest.mock import patch

import httpx
from openpyxl import load_workbook

import cache
import app as webapp
from fake_api import FakeApi
from test_cache import FakeRedis
from test_pbl_assignment import PBLServer

XHR = {'X-Requested-With': 'XMLHttpRequest'}

ADMIN = {'id': 1, 'name': 'Admin', 'role': 'tim_akademik'}
DOSEN = {'id': 7, 'name': 'Dr. Andi', 'role': 'dosen'}


class AppTestCase(unittest.TestCase):

    def setUp(self):
        webapp.app.config['TESTING'] = True
        self.client = webapp.app.test_client()
        self.api = self.make_api()
        for patcher in (patch.object(webapp, 'get_api', return_value=self.api.client),
                        # Responses must come from the views, not a local Redis
                        patch.object(cache, 'redis_available', False)):
            patcher.start()
            self.addCleanup(patcher.stop)

    def tearDown(self):
        self.api.close()

    def make_api(self):
        return FakeApi()

    def login_as(self, user):
        with self.client.session_transaction() as sess:
            sess['user'] = user
            sess['token'] = 'test-token'


class TestAuth(AppTestCase):

    def test_redirects_to_login(self):
        """Pages need a session"""
        response = self.client.get('/pbl')
        self.assertEqual(response.status_code, 302)
        self.assertIn('/login', response.headers['Location'])

    def test_json_401_without_session(self):
        """XHR callers get a JSON 401 instead of a redirect"""
        response = self.client.get('/api/pbl', headers=XHR)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json(), {'success': False, 'error': 'Authentication required'})

    def test_role_denied(self):
        """Lecturers cannot open admin endpoints"""
        self.login_as(DOSEN)
        response = self.client.get('/api/pbl', headers=XHR)
        self.assertEqual(response.status_code, 403)
        page = self.client.get('/pbl')
        self.assertEqual(page.status_code, 302)
        self.assertIn('/dashboard-dosen', page.headers['Location'])

    def test_login_success(self):
        """A successful login stores the token and goes to the role's home"""
        self.api.on('POST', '/login', {'access_token': 'abc', 'user': DOSEN})
        response = self.client.post('/login', data={'login': ' 1001 ', 'password': 'rahasia'})
        self.assertEqual(response.status_code, 302)
        self.assertIn('/dashboard-dosen', response.headers['Location'])
        self.assertEqual(self.api.last_json('POST', '/login'), {'login': '1001', 'password': 'rahasia'})
        with self.client.session_transaction() as sess:
            self.assertEqual(sess['token'], 'abc')
            self.assertEqual(sess['user']['role'], 'dosen')

    def test_login_wrong_password(self):
        """Wrong credentials show the friendly message"""
        self.api.on('POST', '/login', {'message': 'Username/NIP/NID/NIM atau password salah.'}, status=401)
        response = self.client.post('/login', data={'login': 'x', 'password': 'y'})
        self.assertEqual(response.status_code, 401)
        self.assertIn('Silakan coba lagi.', response.get_data(as_text=True))

    def test_login_error_messages(self):
        """Each API status has its own login message"""
        self.assertIn('perangkat lain', webapp.login_error_message(webapp.ApiError('x', 403)))
        self.assertIn('Format data', webapp.login_error_message(webapp.ApiError('x', 422)))
        self.assertEqual(webapp.login_error_message(webapp.ApiError('Akun nonaktif', 400)), 'Akun nonaktif')

    def test_logout(self):
        """Logout tells the API and clears the session"""
        self.login_as(ADMIN)
        self.api.on('POST', '/logout', {'message': 'ok'})
        response = self.client.get('/logout')
        self.assertEqual(response.status_code, 302)
        self.assertTrue(self.api.called('POST', '/logout'))
        with self.client.session_transaction() as sess:
            self.assertNotIn('token', sess)

    def test_expired_session(self):
        """An API 401 clears the session and answers 401 to XHR callers"""
        self.login_as(ADMIN)
        self.api.on('GET', '/users', {'message': 'Unauthenticated.'}, status=401)
        response = self.client.get('/api/mahasiswa', headers=XHR)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()['error'], 'Unauthenticated.')
        with self.client.session_transaction() as sess:
            self.assertNotIn('user', sess)


class TestHealth(AppTestCase):

    def test_healthy(self):
        """The API answering means healthy"""
        with patch.object(webapp.httpx, 'get', return_value=httpx.Response(404)):
            response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['api'], 'reachable')

    def test_unhealthy(self):
        """An unreachable API gives 503"""
        with patch.object(webapp.httpx, 'get', side_effect=httpx.ConnectError('refused')):
            response = self.client.get('/health')
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.get_json()['status'], 'unhealthy')


class TestPBLRoutes(AppTestCase):

    def make_api(self):
        return PBLServer({1: [1]})

    def setUp(self):
        super().setUp()
        self.login_as(ADMIN)

    def test_board_json(self):
        """The board lists modules with their lecturers"""
        data = self.client.get('/api/pbl', headers=XHR).get_json()
        self.assertTrue(data['success'])
        pbl = data['mata_kuliah'][0]['pbls'][0]
        self.assertEqual([d['id'] for d in pbl['dosen']], [1])
        self.assertEqual(data['statistics']['total_dosen'], 5)

    def test_move_needs_confirmation(self):
        """An expertise mismatch answers 409 so the page can ask"""
        response = self.client.post('/api/pbl/move', json={'dosen_id': 2, 'target_pbl_id': 2})
        self.assertEqual(response.status_code, 409)
        self.assertTrue(response.get_json()['decision']['needs_confirmation'])
        self.assertEqual(self.api.mutating_calls(), [('POST', '/pbls/assigned-dosen-batch')])

    def test_move_applied(self):
        """An accepted move is applied and reported"""
        response = self.client.post('/api/pbl/move', json={'dosen_id': 3, 'target_pbl_id': 2})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.api.assigned[2], [3])

    def test_move_missing_fields(self):
        """dosen_id and target_pbl_id are required"""
        response = self.client.post('/api/pbl/move', json={'dosen_id': 3})
        self.assertEqual(response.status_code, 400)


    def test_move_form_fresh_drop(self):
        """A form post with a blank source is a fresh drop, with no unassign call"""
        response = self.client.post('/api/pbl/move',
                                    data={'dosen_id': '3', 'target_pbl_id': '2', 'source_pbl_id': ''})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.api.assigned[2], [3])
        self.assertFalse(any(m == 'DELETE' for m, _ in self.api.mutating_calls()))

    def test_move_form_confirm_false(self):
        """confirm_mismatch=false in a form still needs confirmation"""
        for value in ('false', '0', ''):
            response = self.client.post('/api/pbl/move',
                                        data={'dosen_id': '2', 'target_pbl_id': '2', 'confirm_mismatch': value})
            self.assertEqual(response.status_code, 409)
        self.assertEqual(self.api.assigned[2], [])
        self.assertFalse(self.api.called('POST', '/pbls/2/assign-dosen'))

    def test_move_form_confirm_true(self):
        """confirm_mismatch=true in a form assigns anyway"""
        response = self.client.post('/api/pbl/move',
                                    data={'dosen_id': '2', 'target_pbl_id': '2', 'confirm_mismatch': 'true'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.api.assigned[2], [2])

    def test_move_bad_id(self):
        """Non-numeric ids are refused"""
        response = self.client.post('/api/pbl/move', data={'dosen_id': 'abc', 'target_pbl_id': '2'})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(self.api.called('POST', '/pbls/2/assign-dosen'))


class TestTimAkademikRoutes(AppTestCase):

    def setUp(self):
        super().setUp()
        self.login_as(ADMIN)
        self.total = 0

        def dashboard(request):
            self.total += 1
            return {'totalDosen': self.total}

        self.api.routes[('GET', '/dashboard-tim-akademik')] = dashboard
        for patcher in (patch.object(cache, 'redis_available', True),
                        patch.object(cache, 'redis_client', FakeRedis())):
            patcher.start()
            self.addCleanup(patcher.stop)

    def fetch(self, query=''):
        return self.client.get('/api/dashboard-tim-akademik' + query, headers=XHR).get_json()

    def test_refresh_reaches_api(self):
        """Every refresh goes to the API"""
        self.assertEqual(self.fetch('?refresh=1')['stats']['totalDosen'], 1)
        self.assertEqual(self.fetch('?refresh=1')['stats']['totalDosen'], 2)
        self.assertEqual(len(self.api.requests('GET', '/dashboard-tim-akademik')), 2)

    def test_tab_switch_uses_cache(self):
        """Without refresh the cached tab combination is served"""
        self.fetch()
        self.assertEqual(self.fetch()['stats']['totalDosen'], 1)
        self.assertEqual(len(self.api.requests('GET', '/dashboard-tim-akademik')), 1)


class TestMahasiswaRoutes(AppTestCase):

    def setUp(self):
        super().setUp()
        self.login_as(ADMIN)
        self.api.on('GET', '/users', [{'id': 1, 'nim': '2021001', 'name': 'Sari', 'semester': 1}])

    def test_template_download(self):
        """The import template downloads as an xlsx attachment"""
        response = self.client.get('/mahasiswa/template')
        self.assertEqual(response.status_code, 200)
        self.assertIn('Template_Import_Mahasiswa.xlsx', response.headers['Content-Disposition'])
        wb = load_workbook(io.BytesIO(response.data))
        self.assertEqual(wb.active['A1'].value, 'nim')

    def test_preview_rejects_unknown_type(self):
        """Uploads other than CSV or xlsx are refused"""
        response = self.client.post('/mahasiswa/import/preview',
                                    data={'file': (io.BytesIO(b'x'), 'data.txt')},
                                    content_type='multipart/form-data')
        self.assertEqual(response.status_code, 400)
        self.assertIn('Format file tidak didukung', response.get_json()['error'])

    def test_preview_reports_missing_column(self):
        """A CSV without the ipk column comes back invalid"""
        csv_data = b'nim,nama,username,email,telepon,password,gender,status,angkatan,semester\n' \
                   b'2021002,Budi,budi,budi@umj.ac.id,0812,rahasia,Laki-laki,aktif,2021,1\n'
        response = self.client.post('/mahasiswa/import/preview',
                                    data={'file': (io.BytesIO(csv_data), 'data.csv')},
                                    content_type='multipart/form-data')
        data = response.get_json()
        self.assertFalse(data['valid'])
        self.assertEqual(data['errors'], ['Kolom yang diperlukan tidak ditemukan: ipk'])

    def test_submit_invalid_is_not_sent(self):
        """Invalid rows answer 400 without calling the import endpoint"""
        response = self.client.post('/mahasiswa/import/submit', json={'rows': [{'nim': 'x'}]})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(self.api.called('POST', '/users/import-mahasiswa'))

    def test_bulk_delete_requires_ids(self):
        """Bulk delete without a selection is refused"""
        response = self.client.post('/api/mahasiswa/bulk-delete', json={'ids': []})
        self.assertEqual(response.status_code, 400)

    def test_list_filters(self):
        """Query parameters filter and paginate the list"""
        data = self.client.get('/api/mahasiswa?semester=2', headers=XHR).get_json()
        self.assertEqual(data['rows'], [])
        self.assertEqual(data['filters']['semester'], '2')


class TestDosenRoutes(AppTestCase):

    def setUp(self):
        super().setUp()
        self.login_as(DOSEN)

    def test_konfirmasi_invalid_status(self):
        """Unknown confirmation statuses are refused"""
        response = self.client.post('/api/jadwal/pbl/5/konfirmasi', json={'status': 'mungkin'})
        self.assertEqual(response.status_code, 400)

    def test_weather(self):
        """Weather is served from fetch_weather"""
        with patch.object(webapp, 'fetch_weather', return_value={'source': 'estimate'}) as fetch:
            response = self.client.get('/api/weather?lat=1.5')
        self.assertEqual(response.get_json(), {'source': 'estimate'})
        self.assertEqual(fetch.call_args[0][0], 1.5)


if __name__ == '__main__':
    unittest.main(verbosity=2)
