"""
WSGI entry point, also used by Flask-Migrate / Alembic.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi run-job dd_deadline_sweep
    gunicorn wsgi:app
"""

from bire import create_app

app = create_app()
