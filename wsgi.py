"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
    flask seed-form-types
    flask run-job pending_form_reminders
"""

from phdtrack import create_app

app = create_app()
