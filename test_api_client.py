"""
Unit tests for the academic API client
"""
import unittest

import httpx

from api_client import ApiClient, ApiError, SessionExpired, extract_message, unwrap
from fake_api import FakeApi


class TestExtractMessage(unittest.TestCase):

    def test_message_wins(self):
        """The message field is preferred"""
        self.assertEqual(extract_message({'message': 'Tidak valid', 'errors': {'a': ['x']}}), 'Tidak valid')

    def test_keyed_errors_joined(self):
        """Keyed validation errors are flattened and joined"""
        payload = {'errors': {'nim': ['NIM wajib', 'NIM angka'], 'email': 'Email salah'}}
        self.assertEqual(extract_message(payload), 'NIM wajib, NIM angka, Email salah')

    def test_fallbacks(self):
        """Lists, error strings and the fallback are used in that order"""
        self.assertEqual(extract_message({'errors': ['a', 'b']}), 'a, b')
        self.assertEqual(extract_message({'error': 'rusak'}), 'rusak')
        self.assertEqual(extract_message(None, 'Gagal'), 'Gagal')
        self.assertEqual(extract_message('teks'), 'Terjadi kesalahan')

    def test_unwrap(self):
        """Wrapped payloads give their data"""
        self.assertEqual(unwrap({'data': [1]}), [1])
        self.assertEqual(unwrap([2]), [2])
        self.assertEqual(unwrap(None, []), [])


class TestRequests(unittest.TestCase):

    def setUp(self):
        self.api = FakeApi()

    def tearDown(self):
        self.api.close()

    def test_bearer_token(self):
        """Requests carry the user's token"""
        self.api.on('GET', '/me', {'id': 1})
        self.assertEqual(self.api.client.get('/me'), {'id': 1})
        request = self.api.requests('GET', '/me')[0]
        self.assertEqual(request.headers['authorization'], 'Bearer test-token')
        self.assertEqual(request.headers['accept'], 'application/json')

    def test_401_is_session_expired(self):
        """HTTP 401 raises SessionExpired"""
        self.api.on('GET', '/me', {'message': 'Unauthenticated.'}, status=401)
        with self.assertRaises(SessionExpired) as ctx:
            self.api.client.get('/me')
        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(ctx.exception.message, 'Unauthenticated.')

    def test_error_payload_kept(self):
        """Other errors raise ApiError with status and body"""
        self.api.on('POST', '/users', {'message': 'invalid', 'errors': {'nim': ['x']}}, status=422)
        with self.assertRaises(ApiError) as ctx:
            self.api.client.post('/users', json={})
        self.assertNotIsInstance(ctx.exception, SessionExpired)
        self.assertEqual(ctx.exception.status, 422)
        self.assertEqual(ctx.exception.field('errors'), {'nim': ['x']})

    def test_non_json_error(self):
        """A plain text error body becomes the message"""
        def handler(request):
            return httpx.Response(500, text='Internal Server Error')
        client = ApiClient(base_url='http://api.test/api', transport=httpx.MockTransport(handler))
        with self.assertRaises(ApiError) as ctx:
            client.get('/x')
        self.assertEqual(ctx.exception.message, 'Internal Server Error')
        client.close()

    def test_transport_error(self):
        """Connection failures become ApiError"""
        def handler(request):
            raise httpx.ConnectError('connection refused')
        client = ApiClient(base_url='http://api.test/api', transport=httpx.MockTransport(handler))
        with self.assertRaises(ApiError) as ctx:
            client.get('/x')
        self.assertIsNone(ctx.exception.status)
        client.close()


class TestGather(unittest.TestCase):

    def setUp(self):
        self.api = FakeApi()
        self.api.on('GET', '/a', [1])
        self.api.on('GET', '/b', {'message': 'boom'}, status=500)
        self.api.on('GET', '/c', {'data': 'c'})

    def tearDown(self):
        self.api.close()

    def test_settles_all(self):
        """Every call settles; failures fall back to their defaults"""
        results = self.api.client.gather({'a': '/a', 'b': '/b', 'c': '/c'}, defaults={'b': {}})
        self.assertEqual(results['a'], [1])
        self.assertEqual(results['b'], {})
        self.assertEqual(results['c'], {'data': 'c'})
        self.assertEqual(list(results.failed), ['b'])

    def test_default_is_empty_list(self):
        """Without a default a failed call gives an empty list"""
        self.assertEqual(self.api.client.gather({'b': '/b'})['b'], [])

    def test_strict_raises_after_all_settle(self):
        """strict=True raises the first failure once everything finished"""
        with self.assertRaises(ApiError):
            self.api.client.gather({'a': '/a', 'b': '/b', 'c': '/c'}, strict=True)
        self.assertTrue(self.api.called('GET', '/c'))

    def test_session_expired_always_raised(self):
        """An expired session is raised even when not strict"""
        self.api.on('GET', '/c', {'message': 'Unauthenticated.'}, status=401)
        with self.assertRaises(SessionExpired):
            self.api.client.gather({'b': '/b', 'c': '/c'})

    def test_callables_and_async(self):
        """Callables run alongside paths; gather_async resolves to the same result"""
        results = self.api.client.gather_async({
            'a': '/a',
            'users': lambda: self.api.client.get('/a', params={'role': 'dosen'}),
        }).result(timeout=5)
        self.assertEqual(results, {'a': [1], 'users': [1]})
        roles = [r.url.params.get('role') for r in self.api.requests('GET', '/a')]
        self.assertEqual(sorted(roles, key=str), ['dosen', None])


if __name__ == '__main__':
    unittest.main(verbosity=2)
