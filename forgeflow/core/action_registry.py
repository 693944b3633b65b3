"""Reusable-action store consumed by the run-action step."""

import shlex
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.core import ActionInput, ReusableAction
from ..storage.database import get_db
from ..storage.models import ReusableActionModel
from .exceptions import ActionNotFound, ActionRegistryError
from .logging import get_logger

logger = get_logger(__name__)


class ActionRegistry:
    """Registry of named shell scripts with declared inputs."""

    def __init__(self, db_session: Optional[Session] = None):
        """Initialize the action registry.

        Args:
            db_session: Optional database session. If not provided, will create new sessions as needed.
        """
        self._db_session = db_session
        self._memory_cache: Dict[str, ReusableAction] = {}

    def _get_session(self) -> Session:
        if self._db_session:
            return self._db_session
        return next(get_db())

    def _release(self, session: Session):
        if not self._db_session:
            session.close()

    def register_action(self, action: ReusableAction, replace: bool = False) -> ReusableAction:
        """Store an action.

        Args:
            action: Action to store
            replace: Overwrite an existing action with the same name

        Raises:
            ActionRegistryError: If the name is taken and ``replace`` is False
        """
        session = self._get_session()
        try:
            existing = session.query(ReusableActionModel).filter_by(name=action.name).first()
            if existing and not replace:
                raise ActionRegistryError(f"Action '{action.name}' is already registered", action_name=action.name)

            model = existing or ReusableActionModel(name=action.name)
            model.description = action.description
            model.script = action.script
            model.inputs = [action_input.model_dump() for action_input in action.inputs]
            if not existing:
                session.add(model)
            session.commit()

            self._memory_cache[action.name] = action
            logger.info(f"Registered action '{action.name}' with {len(action.inputs)} input(s)")
            return action

        except IntegrityError:
            session.rollback()
            raise ActionRegistryError(f"Action '{action.name}' is already registered", action_name=action.name)
        except SQLAlchemyError as e:
            session.rollback()
            raise ActionRegistryError(f"Failed to register action '{action.name}': {e}", action_name=action.name)
        finally:
            self._release(session)

    def get_action(self, name: str) -> ReusableAction:
        """Retrieve an action by name.

        Raises:
            ActionNotFound: If no action has that name
        """
        if not name or not name.strip():
            raise ActionNotFound("No action selected for this step")
        name = name.strip()

        if name in self._memory_cache:
            return self._memory_cache[name]

        session = self._get_session()
        try:
            model = session.query(ReusableActionModel).filter_by(name=name).first()
            if not model:
                raise ActionNotFound(f"Action not found: {name}", action_name=name)
            action = self._to_action(model)
            self._memory_cache[name] = action
            return action
        finally:
            self._release(session)

    def list_actions(self) -> List[ReusableAction]:
        session = self._get_session()
        try:
            models = session.query(ReusableActionModel).order_by(ReusableActionModel.name).all()
            return [self._to_action(model) for model in models]
        finally:
            self._release(session)

    def delete_action(self, name: str) -> None:
        session = self._get_session()
        try:
            model = session.query(ReusableActionModel).filter_by(name=name).first()
            if not model:
                raise ActionNotFound(f"Action not found: {name}", action_name=name)
            session.delete(model)
            session.commit()
            self._memory_cache.pop(name, None)
            logger.info(f"Deleted action '{name}'")
        except SQLAlchemyError as e:
            session.rollback()
            raise ActionRegistryError(f"Failed to delete action '{name}': {e}", action_name=name)
        finally:
            self._release(session)

    def clear_cache(self):
        self._memory_cache.clear()

    @staticmethod
    def _to_action(model: ReusableActionModel) -> ReusableAction:
        return ReusableAction(
            name=model.name,
            description=model.description or "",
            script=model.script,
            inputs=[ActionInput(**entry) for entry in (model.inputs or [])],
        )


def resolve_action_inputs(action: ReusableAction, configured: Optional[Dict[str, str]] = None) -> Tuple[Dict[str, str], List[str]]:
    """
    Resolve each declared input: configured value, else declared default, else empty.

    Returns:
        (values by input name, names of required inputs left without a value)
    """
    configured = configured or {}
    values: Dict[str, str] = {}
    missing: List[str] = []
    for action_input in action.inputs:
        value = configured.get(action_input.name)
        if value in (None, ""):
            value = action_input.default or ""
        if action_input.required and value == "":
            missing.append(action_input.name)
        values[action_input.name] = str(value)
    return values, missing


def render_action_script(action: ReusableAction, values: Dict[str, str]) -> str:
    """Prepend shell-quoted ``export`` lines for the resolved inputs to the action's script."""
    exports = [f"export {name}={shlex.quote(value)}" for name, value in values.items()]
    return "\n".join(exports + [action.script])
