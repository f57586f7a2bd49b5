"""
Approval Routing Engine
SQLAlchemy extension instance shared by every model module.

Usage:
    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import inspect, text

db = SQLAlchemy()


def drop_all_tables():
    """Drop every table, detaching the organization tree first.

    organizations.parent_id is ON DELETE RESTRICT, so the implicit delete a
    DROP TABLE performs fails while children still point at their parents.
    """
    if inspect(db.engine).has_table("organizations"):
        db.session.execute(text("UPDATE organizations SET parent_id = NULL"))
        db.session.commit()
    db.drop_all()
