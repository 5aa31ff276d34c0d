import os
import json
import hashlib
from functools import wraps
from flask import request, jsonify, session
import redis

# DB 1 for cache, DB 0 is left to other services on the same Redis
redis_url = os.getenv('REDIS_URL', 'redis://localhost:6379/1')
redis_client = None
redis_available = False

try:
    _temp_client = redis.from_url(redis_url, socket_connect_timeout=1)
    _temp_client.ping()
    redis_client = _temp_client
    redis_available = True
    print("[Cache] Redis connected successfully")
except (redis.RedisError, ValueError) as e:
    print(f"[Cache] Redis not available: {e}")
    print("[Cache] Running in no-cache mode")
    redis_available = False


def get_cache_version(prefix):
    """Current version for a cache prefix; bumping it drops every key under the prefix."""
    if not redis_available:
        return "0"
    try:
        v = redis_client.get(f"version:{prefix}")
        return v.decode('utf-8') if v else "0"
    except redis.RedisError:
        return "0"


def invalidate_cache(prefix):
    """Drop every key under `prefix` by bumping its version."""
    if not redis_available:
        return
    try:
        redis_client.incr(f"version:{prefix}")
        print(f"[Cache] Invalidated prefix: {prefix}")
    except redis.RedisError as e:
        print(f"[Cache] Invalidation failed: {e}")


def _read(key):
    if not redis_available:
        return None
    try:
        raw = redis_client.get(key)
    except redis.RedisError as e:
        print(f"[Cache] Read error: {e}")
        return None
    return json.loads(raw) if raw else None


def _write(key, ttl, value):
    if not redis_available:
        return
    try:
        redis_client.setex(key, ttl, json.dumps(value))
    except (redis.RedisError, TypeError) as e:
        print(f"[Cache] Write error: {e}")


class JsonCache:
    """
    JSON values under a versioned prefix, e.g. one entry per dashboard tab
    combination. get() returns None on a miss or when Redis is down.
    """

    def __init__(self, prefix, ttl=300):
        self.prefix = prefix
        self.ttl = ttl

    def _key(self, key):
        return f"cache:{self.prefix}:{get_cache_version(self.prefix)}:{key}"

    def get(self, key):
        return _read(self._key(key))

    def set(self, key, value):
        _write(self._key(key), self.ttl, value)


def response_cache_key(prefix, *args):
    """Key from prefix version, path, query string, session user and view arguments."""
    user = session.get('user') or {}
    parts = [prefix, get_cache_version(prefix), request.path,
             json.dumps(request.args.to_dict(flat=False), sort_keys=True),
             # Responses are fetched with the user's token, so keep them per user
             str(user.get('id', 'anon'))]
    parts.extend(str(a) for a in args)
    digest = hashlib.sha256("|".join(parts).encode()).hexdigest()
    return f"cache:{prefix}:{digest}"


def cache_response(ttl=300, prefix='view'):
    """
    Cache the JSON body of a GET endpoint for `ttl` seconds.
    Error responses and (body, status) tuples are never cached.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not redis_available or request.method != 'GET':
                return f(*args, **kwargs)

            key = response_cache_key(prefix, *args, *kwargs.values())
            cached = _read(key)
            if cached is not None:
                return jsonify(cached)

            response = f(*args, **kwargs)
            if isinstance(response, tuple) or response.status_code != 200 or not response.is_json:
                return response
            _write(key, ttl, response.get_json())
            return response
        return decorated_function
    return decorator
