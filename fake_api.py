"""
In-memory stand-in for the academic API, used by the unit tests.

A real ApiClient is pointed at an httpx.MockTransport, so the code under
test goes through the same request / error handling path as in
production. Routes map (METHOD, path) to a payload, a (status, payload)
tuple, or a callable taking the httpx.Request.
"""
import json
import threading

import httpx

from api_client import ApiClient

BASE_URL = 'http://api.test/api'


class FakeApi:
    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self._lock = threading.Lock()
        self.client = ApiClient(token='test-token', base_url=BASE_URL,
                                transport=httpx.MockTransport(self._handle))

    def on(self, method, path, payload=None, status=200):
        self.routes[(method.upper(), path)] = (status, payload)
        return self

    def _handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len('/api'):]
        with self._lock:
            self.calls.append((request.method, path, request))

        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json={'message': f'No route {request.method} {path}'})
        if callable(route):
            route = route(request)
        status, payload = route if isinstance(route, tuple) else (200, route)
        if payload is None:
            return httpx.Response(status)
        return httpx.Response(status, json=payload)

    def called(self, method, path) -> bool:
        return any(m == method and p == path for m, p, _ in self.calls)

    def requests(self, method, path):
        return [r for m, p, r in self.calls if m == method and p == path]

    def last_json(self, method, path):
        found = self.requests(method, path)
        return json.loads(found[-1].content) if found else None

    def mutating_calls(self):
        return [(m, p) for m, p, _ in self.calls if m != 'GET']

    def close(self):
        self.client.close()
