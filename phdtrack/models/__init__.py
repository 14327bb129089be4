"""
PhD Progress Tracker
Domain models package.

All models share the single ``db`` extension object, bound to the app in
``create_app``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
