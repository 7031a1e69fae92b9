"""WSGI entry point: ``gunicorn resort_club.wsgi:app``."""

import os

from .app import create_app

app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5055"))
    app.run(host="0.0.0.0", port=port, debug=True)
