"""Base model for SQLAlchemy."""

import uuid

from sqlalchemy.orm import declarative_base

# Single declarative base for all models
Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())
