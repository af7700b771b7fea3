"""
WSGI entry point and Flask CLI target.

Usage:
    gunicorn wsgi:app
    FLASK_APP=wsgi.py flask seed-spec-catalog
    FLASK_APP=wsgi.py flask db migrate -m "description"
"""

from qapflow import create_app

app = create_app()
