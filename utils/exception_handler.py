"""
Exception Handler Module
Typed errors for the trust core and the helpers that report them
"""

import logging
import warnings
from typing import Optional

from caching.simple_cache import ExpiringCache
from config import Config

logger = logging.getLogger(__name__)


class TrustCoreError(Exception):
    """Base class for every error raised by the trust core"""

    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(TrustCoreError):
    """Malformed or missing input"""
    pass


class EntityNotFound(ValidationError):
    """Referenced entity does not exist"""

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class InvalidStateTransition(TrustCoreError):
    """Business rule forbids the requested state change"""

    def __init__(self, message: str, current_state=None, target_state=None):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(message)


class ConflictError(TrustCoreError):
    """Lost an optimistic concurrency race; the stored state changed underneath"""

    retryable = True


class PermissionDenied(TrustCoreError):
    """Actor is not authorized for the entity or action"""
    pass


class VerificationThrottled(PermissionDenied):
    """Too many failed verification attempts inside the rolling window"""

    def __init__(self, message: str, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)


class ExternalDependencyFailure(TrustCoreError):
    """Payment rail or object store returned an error"""

    retryable = True


class OperationTimeout(ExternalDependencyFailure):
    """A bounded external call or lock acquisition ran out of time"""
    pass


class AuditDegraded(UserWarning):
    """The primary operation succeeded but its audit side effect did not"""
    pass


def report_audit_degraded(message: str) -> None:
    """Log and emit an AuditDegraded warning without interrupting the caller"""
    logger.warning(f"⚠️ AUDIT_DEGRADED: {message}")
    warnings.warn(message, AuditDegraded, stacklevel=3)


# Denials per actor inside the security-event window
_denial_counts = ExpiringCache(default_ttl=Config.SECURITY_EVENT_WINDOW_SECONDS)


def record_permission_denial(actor_id: Optional[int], action: str, reason: str) -> PermissionDenied:
    """
    Count a denial for the actor and build the error to raise.
    Repeated denials inside the window are logged as a security event.
    """
    key = f"denial:{actor_id}"
    count = _denial_counts.increment(key)
    if count >= Config.SECURITY_EVENT_DENIAL_THRESHOLD:
        logger.warning(
            f"🚨 SECURITY_EVENT: actor {actor_id} denied {count} times "
            f"(latest action='{action}', reason='{reason}')"
        )
    else:
        logger.info(f"🔒 PERMISSION_DENIED: actor {actor_id} action='{action}' reason='{reason}'")
    return PermissionDenied(reason)
