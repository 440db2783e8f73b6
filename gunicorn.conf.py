"""
Gunicorn configuration for the Nudge behavioral engine API.

Env vars that override defaults:
  PORT     — TCP port to bind (default: 8000)
  WORKERS  — number of worker processes (default: 2)

Each worker holds its own in-memory analytics buffer; buffered events are
drained by the request that produced them, so nothing is shared across
workers.
"""
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"

workers = int(os.environ.get("WORKERS", "2"))

# Uvicorn's ASGI event loop inside Gunicorn's process manager.
worker_class = "uvicorn.workers.UvicornWorker"
wsgi_app = "nudge.main:app"

keepalive = 5

# Detection passes over large windows can take a while on small containers.
timeout = 120
graceful_timeout = 30

# stdout only; application loggers share the same stream.
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
accesslog = "-"
errorlog = "-"
access_log_format = '%(h)s "%(r)s" %(s)s %(b)sB %(D)sµs'
