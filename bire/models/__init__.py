"""
BIRE Review Workflow
Model package.

Every model module imports the shared ``db`` handle from here so that the
application factory can bind a single SQLAlchemy instance.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
