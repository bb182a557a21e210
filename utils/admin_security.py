"""
Operator Authorization
Operator-only trust-core actions (dispute resolution, alert review, fraud
statistics) check the acting user here. Every denial is counted so repeated
attempts surface as security events.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from models import User
from utils.exception_handler import EntityNotFound, record_permission_denial

logger = logging.getLogger(__name__)


def is_operator(session: Session, user_id: Optional[int]) -> bool:
    if user_id is None:
        return False
    user = session.get(User, user_id)
    return bool(user is not None and user.is_admin)


def require_operator(session: Session, user_id: Optional[int], action: str) -> User:
    """
    Load the acting operator.

    Raises:
        PermissionDenied: if the user is missing or not an operator
    """
    user = session.get(User, user_id) if user_id is not None else None
    if user is None or not user.is_admin:
        raise record_permission_denial(user_id, action, f"Operator privileges required to {action}")
    return user


def require_party(actor_id: int, allowed_ids: Iterable[int], action: str, session: Optional[Session] = None) -> None:
    """
    Require the actor to be one of the allowed parties (operators pass when a session is given).

    Raises:
        PermissionDenied: if the actor is neither a party nor an operator
    """
    if actor_id in set(allowed_ids):
        return
    if session is not None and is_operator(session, actor_id):
        logger.info(f"🛡️ OPERATOR_ACTION: operator {actor_id} performing '{action}'")
        return
    raise record_permission_denial(actor_id, action, f"User {actor_id} is not a party to this {action}")


def require_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise EntityNotFound("User", user_id)
    return user
