"""
Gunicorn configuration for the academic scheduling admin app.

    gunicorn -c gunicorn_config.py app:app
"""
import multiprocessing
import os

# Server Socket
bind = os.getenv('GUNICORN_BIND', '0.0.0.0:5000')
backlog = 2048

# Workers mostly wait on the academic API, so threaded workers fit best
workers = int(os.getenv('GUNICORN_WORKERS', (multiprocessing.cpu_count() * 2) + 1))
worker_class = os.getenv('GUNICORN_WORKER_CLASS', 'gthread')
threads = int(os.getenv('GUNICORN_THREADS', 4))

# Must stay above API_TIMEOUT, a page load can wait on one slow API call
timeout = int(os.getenv('GUNICORN_TIMEOUT', 60))
graceful_timeout = 30
keepalive = 5
max_requests = 1000
max_requests_jitter = 50

proc_name = 'akademik_admin'
daemon = False

# Logging
accesslog = os.getenv('GUNICORN_ACCESS_LOG', '-')
errorlog = os.getenv('GUNICORN_ERROR_LOG', '-')
loglevel = os.getenv('GUNICORN_LOG_LEVEL', 'info')
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Security
limit_request_line = 4096
limit_request_fields = 100
limit_request_field_size = 8190


# Server Hooks
def on_starting(server):
    print(f"Starting Gunicorn with {workers} workers and {threads} threads per worker")


def when_ready(server):
    print(f"Gunicorn is ready. Listening on: {bind}")


def post_fork(server, worker):
    print(f"Worker spawned (pid: {worker.pid})")


def pre_request(worker, req):
    worker.log.debug(f"{req.method} {req.path}")


def worker_exit(server, worker):
    """Stop the API fan-out pools so in-flight fetches do not outlive the worker."""
    from api_client import shutdown_executors
    shutdown_executors()
    print(f"Worker exit (pid: {worker.pid})")


def on_exit(server):
    print("Shutting down Gunicorn")
