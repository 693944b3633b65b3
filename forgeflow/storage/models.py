"""SQLAlchemy database models for the workflow engine."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer
from .database import Base


class WorkflowModel(Base):
    """Persisted workflow document."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    document = Column(JSON, nullable=False)  # Workflow.model_dump(mode="json")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WorkflowRunModel(Base):
    """Terminal (or in-flight) state of a workflow run."""
    __tablename__ = "workflow_runs"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)  # not a foreign key: ad-hoc runs have no stored workflow
    status = Column(String, nullable=False)  # running, success, failed, cancelled
    progress = Column(Integer, default=0)
    current_step_id = Column(String)
    trigger = Column(String, default="manual")
    logs = Column(JSON, default=list)
    error_message = Column(Text)
    released_version = Column(String)
    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime)


class ReusableActionModel(Base):
    """Named shell script with declared inputs."""
    __tablename__ = "reusable_actions"

    name = Column(String, primary_key=True)
    description = Column(Text, default="")
    script = Column(Text, nullable=False)
    inputs = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class RepositoryModel(Base):
    """Local checkout bound to workflows."""
    __tablename__ = "repositories"

    id = Column(String, primary_key=True)
    path = Column(String, nullable=False)
    name = Column(String)
    owner = Column(String)
    repo = Column(String)
    build_system = Column(String, default="unknown")
    default_branch = Column(String, default="main")
    latest_version = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
