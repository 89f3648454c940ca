"""
Gunicorn Configuration for the Channel Escrow deal service
Production worker management with uvicorn workers

    gunicorn -c gunicorn_conf.py webhook_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"
backlog = 2048

# Worker processes
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000  # Restart workers after 10k requests to prevent memory leaks
max_requests_jitter = 1000
timeout = 60  # Crypto invoice creation calls the processor inside the request
keepalive = 30

# Logging
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr
loglevel = "info"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = "channel_escrow_deals"

# Server mechanics
daemon = False
pidfile = None

# Each worker builds its own connection pool
preload_app = False


def on_starting(server):
    """Called just before the master process is initialized."""
    print("🚀 Gunicorn master process starting...")


def when_ready(server):
    """Called just after the server is started."""
    print(f"✅ Gunicorn ready with {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    """Called just after a worker has been forked."""
    print(f"🔧 Worker {worker.pid} started")


def worker_abort(worker):
    """Called when a worker receives the SIGABRT signal."""
    print(f"❌ Worker {worker.pid} aborted")


def worker_exit(server, worker):
    """Called just after a worker has been exited."""
    print(f"👋 Worker {worker.pid} exited")
