"""
app_server.py — Entry point for Restroom Checks

- Imports the Flask `app` object from app.py
- Ensures the database tables exist, seeds restrooms/custodians and stores the shared secrets
- Starts the background scheduler (monthly report mail, session purge)
- Runs under Waitress (production-friendly) or the Flask dev server when USE_WAITRESS=0
- Respects HOST, PORT, DEBUG, THREADS and LOG_DIR environment variables
"""

import os
import logging
from logging.handlers import TimedRotatingFileHandler

from waitress import serve

from app import app, init_db, start_scheduler

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _configure_logging(debug):
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=LOG_FORMAT)
    log_dir = os.environ.get("LOG_DIR")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handler = TimedRotatingFileHandler(os.path.join(log_dir, "server.log"),
                                           when="midnight", backupCount=14, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def _init_runtime():
    """Create tables, seed reference data and start scheduled jobs."""
    with app.app_context():
        try:
            init_db()
        except Exception as ex:
            app.logger.exception("init_db() failed: %s", ex)
            raise
    if start_scheduler() is None:
        app.logger.info("Scheduler disabled (SCHEDULER_ENABLED=0)")


def _run_server():
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "5000"))
    debug = os.environ.get("DEBUG", "0") == "1"

    if os.environ.get("USE_WAITRESS", "1") == "1":
        # Each open /events stream holds one worker thread
        threads = int(os.environ.get("THREADS", "16"))
        app.logger.info("Starting Waitress on %s:%s (threads=%s)", host, port, threads)
        serve(app, host=host, port=port, threads=threads)
        return

    # Flask development server (do not use in Internet-facing production)
    app.logger.info("Starting Flask dev server on %s:%s (debug=%s)", host, port, debug)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)


if __name__ == "__main__":
    _configure_logging(os.environ.get("DEBUG", "0") == "1")
    _init_runtime()
    _run_server()
