# gunicorn -c gunicorn_config.py oracle_xport.app:app
bind = "0.0.0.0:9161"
workers = 1  # KEEP THIS AS 1: scrape state (metric store, registry) lives in the worker process
threads = 4  # concurrent /metrics requests share one in-flight scrape
worker_class = "gthread"

loglevel = "info"
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr

# Timeout settings for client disconnects and stuck requests
timeout = 45      # Worker timeout - must stay above the largest scrape timeout (15s)
keepalive = 2     # Keep-alive for HTTP connections
graceful_timeout = 30  # Graceful shutdown timeout

# no max_requests: a recycled worker loses the lifetime counters (scrapes_total, scrape_errors_total)
preload_app = False       # the app opens no connections at import; each worker builds its own store

# Enable proper signal handling for Docker
enable_stdio_inheritance = True


def worker_timeout(worker):
    """Called when a worker times out (client disconnect or stuck request)."""
    import logging
    logging.warning(f"Worker {worker.pid} timed out - likely a target ignoring the scrape deadline")


disable_redirect_access_to_syslog = True


### For TLS support, uncomment and set certfile and keyfile paths below.
### As well as change bind to use :8443.
# certfile = "/certs/server.crt"
# keyfile = "/certs/server.key"

def worker_exit(server, worker):
    """Called when a worker is exiting: release target connections still open."""
    import logging
    from oracle_xport.app import graceful_shutdown
    logging.info(f"Worker {worker.pid} exiting - cleanup initiated")
    graceful_shutdown(grace=5.0)


def on_exit(server):
    """Called when the master process is exiting."""
    import logging
    logging.info("Gunicorn master process exiting")
