import os

from sinsuan.config import _as_int

wsgi_app = "sinsuan:create_app()"
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")

# One SQLite file per node: few processes, threads share each process's pool.
workers = max(1, min(_as_int("GUNICORN_WORKERS", _as_int("WEB_CONCURRENCY", 1)), 4))
threads = max(1, min(_as_int("GUNICORN_THREADS", 4), 8))
worker_class = "gthread"
timeout = _as_int("GUNICORN_TIMEOUT", 30)

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")


def worker_exit(server, worker):
    app = getattr(worker, "wsgi", None)
    counter = app.extensions.get("sinsuan") if app is not None else None
    if counter is not None:
        counter.shutdown()
