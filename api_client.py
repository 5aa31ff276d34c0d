"""
HTTP client for the academic REST API.

Wraps httpx with the bearer token of the logged-in user, turns error
responses into ApiError, and fans out independent GETs on a thread pool.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Mapping, Optional, Union

import httpx

logger = logging.getLogger(__name__)

API_BASE_URL = os.getenv('API_BASE_URL', 'http://localhost:8000/api')
API_TIMEOUT = float(os.getenv('API_TIMEOUT', 30))

DEFAULT_ERROR = 'Terjadi kesalahan'

# Fan-out workers for page loads; a separate pool runs the whole load so a
# cancelled load never blocks a fetch worker.
_fetch_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="api_fetch")
_load_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="api_load")


def shutdown_executors():
    _load_executor.shutdown(wait=False, cancel_futures=True)
    _fetch_executor.shutdown(wait=False, cancel_futures=True)


class ApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload if payload is not None else {}

    def field(self, name, default=None):
        if isinstance(self.payload, dict):
            return self.payload.get(name, default)
        return default


class SessionExpired(ApiError):
    """Raised on HTTP 401: the token is missing, expired or revoked."""


def extract_message(payload: Any, fallback: Optional[str] = None) -> str:
    """
    Pick a human readable message out of an error body.

    `message` wins, then the values of a Laravel style `errors` dict joined
    with ", ", then the fallback.
    """
    if isinstance(payload, dict):
        message = payload.get('message')
        if message:
            return str(message)
        errors = payload.get('errors')
        if isinstance(errors, dict) and errors:
            parts = []
            for value in errors.values():
                if isinstance(value, (list, tuple)):
                    parts.extend(str(v) for v in value)
                else:
                    parts.append(str(value))
            return ', '.join(parts)
        if isinstance(errors, list) and errors:
            return ', '.join(str(e) for e in errors)
        if payload.get('error'):
            return str(payload['error'])
    return fallback or DEFAULT_ERROR


def unwrap(payload: Any, default=None):
    """Return payload['data'] for wrapped responses, the payload otherwise."""
    if isinstance(payload, dict) and 'data' in payload:
        return payload['data']
    if payload is None:
        return default
    return payload


class GatherResult(dict):
    """Results keyed by call name; `failed` maps the names that fell back to defaults to their error."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failed: Dict[str, ApiError] = {}


class ApiClient:
    def __init__(self, token: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        headers = {'Accept': 'application/json'}
        if token:
            headers['Authorization'] = f'Bearer {token}'
        self.token = token
        self._client = httpx.Client(
            base_url=(base_url or API_BASE_URL).rstrip('/'),
            timeout=timeout or API_TIMEOUT,
            headers=headers,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("[API] %s %s failed: %s", method, path, exc)
            raise ApiError(str(exc) or DEFAULT_ERROR) from exc

        payload = self._decode(response)
        if response.status_code == 401:
            raise SessionExpired(extract_message(payload, 'Sesi berakhir, silakan login kembali'),
                                 401, payload)
        if response.is_error:
            logger.info("[API] %s %s -> %s", method, path, response.status_code)
            raise ApiError(extract_message(payload), response.status_code, payload)
        return payload

    @staticmethod
    def _decode(response: httpx.Response):
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return {'message': response.text} if response.is_error else response.text

    def get(self, path, params=None):
        return self.request('GET', path, params=params)

    def post(self, path, json=None):
        return self.request('POST', path, json=json)

    def put(self, path, json=None):
        return self.request('PUT', path, json=json)

    def delete(self, path):
        return self.request('DELETE', path)

    def upload(self, path, filename: str, content: bytes,
               content_type='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'):
        return self.request('POST', path, files={'file': (filename, content, content_type)})

    def submit(self, fn, *args, **kwargs):
        """Run a whole screen load in the background; returns its Future."""
        return _load_executor.submit(fn, *args, **kwargs)

    def gather_async(self, calls: Mapping[str, Union[str, Callable[[], Any]]],
                     defaults: Optional[Dict[str, Any]] = None, strict: bool = False):
        """Future resolving to the result of gather()."""
        return self.submit(self.gather, calls, defaults, strict)

    def gather(self, calls: Mapping[str, Union[str, Callable[[], Any]]],
               defaults: Optional[Dict[str, Any]] = None, strict: bool = False) -> Dict[str, Any]:
        """
        Run independent calls concurrently and wait for all of them.

        A call is either a path (GET) or a zero-argument callable. Failed
        calls resolve to their default (an empty list unless given); with
        strict=True the first failure is raised once every call settled.
        SessionExpired is always raised.
        """
        defaults = defaults or {}
        futures = {}
        for name, call in calls.items():
            fn = (lambda p=call: self.get(p)) if isinstance(call, str) else call
            futures[name] = _fetch_executor.submit(fn)

        results, first_error = GatherResult(), None
        for name, future in futures.items():
            try:
                results[name] = future.result()
            except ApiError as exc:
                logger.warning("[API] fan-out call %s failed: %s", name, exc.message)
                if first_error is None or isinstance(exc, SessionExpired):
                    first_error = exc
                results[name] = defaults.get(name, [])
                results.failed[name] = exc

        if first_error is not None and (strict or isinstance(first_error, SessionExpired)):
            raise first_error
        return results
