"""
Audit Logging
Durable audit_logs rows plus a JSON line on the dedicated `audit` logger.
Audit writes are best effort: a failure is reported, never raised, so the
primary operation's outcome stands and the caller can surface degraded coverage.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Config
from models import AuditLog
from utils.helpers import utc_now

logger = logging.getLogger(__name__)

audit_log = logging.getLogger('audit')
if Config.AUDIT_LOG_FILE and not audit_log.handlers:
    audit_handler = logging.FileHandler(Config.AUDIT_LOG_FILE)
    audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
    audit_log.addHandler(audit_handler)
    audit_log.setLevel(logging.INFO)


class AuditLogger:
    """Service for trust-core audit logging"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None, clock=None):
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.clock = clock or utc_now

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        entity_type: str,
        entity_id: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Write one audit entry in its own transaction.

        Returns:
            bool: True when the durable row was written
        """
        timestamp = self.clock()
        entry = {
            'timestamp': timestamp.isoformat(),
            'actor_id': actor_id,
            'action': action,
            'entity_type': entity_type,
            'entity_id': None if entity_id is None else str(entity_id),
            'details': details or {},
        }
        audit_log.info(json.dumps(entry, default=str))

        session = self.session_factory()
        try:
            session.add(AuditLog(
                actor_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entry['entity_id'],
                details=json.loads(json.dumps(details or {}, default=str)),
                created_at=timestamp,
            ))
            session.commit()
            logger.debug(f"🛡️ AUDIT: {action} on {entity_type} {entity_id} by {actor_id}")
            return True
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"❌ AUDIT_WRITE_FAILED: {action} on {entity_type} {entity_id}: {e}")
            return False
        finally:
            session.close()
