"""Repository bindings: local checkouts the workflows run against."""

import os
import uuid
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import BuildSystem, RepositoryBinding
from ..storage.database import get_db
from ..storage.models import RepositoryModel
from .build_system import BuildSystemDetector
from .exceptions import RepositoryNotFoundError, StorageError
from .logging import get_logger

logger = get_logger(__name__)


class RepositoryStore:
    """Creates, refreshes and looks up repository bindings."""

    def __init__(self, detector: Optional[BuildSystemDetector] = None, db_session: Optional[Session] = None):
        self.detector = detector or BuildSystemDetector()
        self._db_session = db_session

    def _get_session(self) -> Session:
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, session: Session):
        if not self._db_session:
            session.close()

    def bind(self, path: str, owner: Optional[str] = None, repo: Optional[str] = None,
             default_branch: str = "main", name: Optional[str] = None,
             binding_id: Optional[str] = None) -> RepositoryBinding:
        """Bind a local folder, classifying its build system."""
        binding = RepositoryBinding(
            id=binding_id or str(uuid.uuid4()),
            path=os.path.abspath(path),
            name=name or os.path.basename(os.path.normpath(path)),
            owner=owner,
            repo=repo,
            build_system=self.detector.detect(path),
            default_branch=default_branch,
        )
        self.save(binding)
        logger.info(f"Bound repository {binding.name} at {binding.path} ({binding.build_system.value})")
        return binding

    def refresh(self, binding_id: str) -> RepositoryBinding:
        """Re-run build-system detection for a binding."""
        binding = self.get(binding_id)
        binding.build_system = self.detector.detect(binding.path)
        self.save(binding)
        return binding

    def save(self, binding: RepositoryBinding) -> None:
        session = self._get_session()
        try:
            model = session.get(RepositoryModel, binding.id)
            if model is None:
                model = RepositoryModel(id=binding.id)
                session.add(model)
            model.path = binding.path
            model.name = binding.name
            model.owner = binding.owner
            model.repo = binding.repo
            model.build_system = binding.build_system.value
            model.default_branch = binding.default_branch
            model.latest_version = binding.latest_version
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to store repository {binding.id}: {e}", operation="save", table="repositories")
        finally:
            self._release(session)

    def record_latest_version(self, binding_id: str, version: str) -> bool:
        """Cache the latest released version on a stored binding. Unknown ids are ignored."""
        session = self._get_session()
        try:
            model = session.get(RepositoryModel, binding_id)
            if model is None:
                return False
            model.latest_version = version
            session.commit()
            return True
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to update repository {binding_id}: {e}", operation="update", table="repositories")
        finally:
            self._release(session)

    def get(self, binding_id: str) -> RepositoryBinding:
        session = self._get_session()
        try:
            model = session.get(RepositoryModel, binding_id)
            if model is None:
                raise RepositoryNotFoundError(f"Repository '{binding_id}' not found", repository_id=binding_id)
            return self._to_binding(model)
        finally:
            self._release(session)

    def list(self) -> List[RepositoryBinding]:
        session = self._get_session()
        try:
            return [self._to_binding(model) for model in session.query(RepositoryModel).order_by(RepositoryModel.name)]
        finally:
            self._release(session)

    def delete(self, binding_id: str) -> None:
        session = self._get_session()
        try:
            model = session.get(RepositoryModel, binding_id)
            if model is None:
                raise RepositoryNotFoundError(f"Repository '{binding_id}' not found", repository_id=binding_id)
            session.delete(model)
            session.commit()
        finally:
            self._release(session)

    @staticmethod
    def _to_binding(model: RepositoryModel) -> RepositoryBinding:
        return RepositoryBinding(
            id=model.id,
            path=model.path,
            name=model.name,
            owner=model.owner,
            repo=model.repo,
            build_system=BuildSystem(model.build_system or BuildSystem.UNKNOWN.value),
            default_branch=model.default_branch or "main",
            latest_version=model.latest_version,
        )
