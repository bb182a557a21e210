"""
Optimistic Locking Infrastructure
Status- and version-guarded updates that detect concurrent modification
"""

import logging
from typing import Any, Dict, Optional, Type

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Base
from utils.exception_handler import ConflictError
from utils.helpers import utc_now

logger = logging.getLogger(__name__)


class OptimisticLockManager:
    """
    Manager for optimistic locking operations.
    Every guarded update checks the row is still in the state the caller read;
    zero affected rows means someone else got there first.
    """

    def __init__(self, session: Session):
        self.session = session

    def guarded_update(
        self,
        model_class: Type[Base],
        entity_id: Any,
        expected_version: int,
        updates: Dict[str, Any],
        expected_status: Optional[Any] = None,
    ) -> int:
        """
        Perform a version-controlled update, optionally also pinned to a status.

        Args:
            model_class: SQLAlchemy model with `id`, `version` (and `status`) columns
            entity_id: Primary key value
            expected_version: Version the caller read
            updates: Column values to write
            expected_status: Status the caller read, if the update is a transition

        Returns:
            int: The new version

        Raises:
            ConflictError: If the row changed since it was read
        """
        new_version = expected_version + 1
        values = {**updates, "version": new_version}
        if hasattr(model_class, "updated_at"):
            values.setdefault("updated_at", utc_now())

        stmt = update(model_class).where(
            model_class.id == entity_id,
            model_class.version == expected_version,
        )
        if expected_status is not None:
            stmt = stmt.where(model_class.status == expected_status)
        stmt = stmt.values(values).execution_options(synchronize_session=False)

        result = self.session.execute(stmt)

        if result.rowcount == 0:
            logger.warning(
                f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                f"expected_version={expected_version} expected_status={expected_status}"
            )
            raise ConflictError(
                f"{model_class.__name__} {entity_id} was modified by another process "
                f"(expected version {expected_version})"
            )

        logger.debug(
            f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
            f"v{expected_version} → v{new_version}"
        )
        return new_version

    def apply(self, instance: Base, updates: Dict[str, Any], expected_status: Optional[Any] = None) -> Base:
        """Guarded update of a loaded instance, then refresh it to the committed values"""
        self.guarded_update(
            type(instance), instance.id, instance.version, updates, expected_status=expected_status
        )
        self.session.refresh(instance)
        return instance
