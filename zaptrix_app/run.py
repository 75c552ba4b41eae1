# zaptrix_app/run.py
# Gunicorn entrypoint: gunicorn 'zaptrix_app.run:app'
# Worker entrypoint:   flask --app zaptrix_app.run worker inbound-relay
import os
import sys
import logging

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
entrypoint_logger = logging.getLogger("zaptrix.run_entrypoint")

from zaptrix_app import create_app  # noqa: E402

try:
    entrypoint_logger.info("Calling 'create_app()' to instantiate the Flask application...")
    app = create_app()
    app.logger.info("Flask application (Zaptrix) created successfully by factory in run.py.")
except Exception as e:
    entrypoint_logger.critical(
        "!!! CRITICAL ERROR DURING FLASK APP CREATION (call to create_app()) IN RUN.PY (Zaptrix) !!!",
        exc_info=True
    )
    print(f"FATAL: Failed to create Flask app (Zaptrix) in run.py during create_app() call: {e}", file=sys.stderr)
    sys.exit(1)


if __name__ == '__main__':
    host = os.environ.get('FLASK_RUN_HOST', '0.0.0.0')
    try:
        port = int(os.environ.get('FLASK_RUN_PORT', 5000))
    except ValueError:
        entrypoint_logger.warning("Invalid FLASK_RUN_PORT value. Using default port 5000.")
        port = 5000

    debug_mode = app.config.get('DEBUG', False)
    entrypoint_logger.info(f"Starting Zaptrix Flask development server on http://{host}:{port}/ (Debug Mode: {debug_mode})")
    print("[!] WARNING: This is a development server. Use Gunicorn in production.")
    app.run(host=host, port=port, debug=debug_mode, use_reloader=debug_mode)
