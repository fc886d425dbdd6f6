"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask db upgrade    # project_links table
"""

from permit_portal import create_app

app = create_app()
