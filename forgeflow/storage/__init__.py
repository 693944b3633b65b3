"""Database models and storage layer."""

from .database import Base, get_db, create_tables, drop_tables, get_database_engine, reset_database_engine
from .models import WorkflowModel, WorkflowRunModel, ReusableActionModel, RepositoryModel

__all__ = [
    "Base",
    "get_db",
    "create_tables",
    "drop_tables",
    "get_database_engine",
    "reset_database_engine",
    "WorkflowModel",
    "WorkflowRunModel",
    "ReusableActionModel",
    "RepositoryModel",
]
