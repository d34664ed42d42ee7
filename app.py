# app.py
"""
Bardo event ticketing backend, WSGI entrypoint.

    gunicorn app:app
    python app.py
"""
import os

from bardo import create_app

app = create_app()


if __name__ == "__main__":
    # Production: run behind a WSGI server (gunicorn/uwsgi) and set SECRET_KEY + SESSION_COOKIE_SECURE
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "5000"))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host=host, port=port, debug=debug, use_reloader=False)
