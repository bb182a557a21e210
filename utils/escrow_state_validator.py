"""
Escrow State Transition Validator
================================

Single source of truth for which escrow custody transitions are legal.
Released, Refunded and Cancelled are terminal. Disputed is entered and left
only through the dispute path.
"""

import logging
from typing import Dict, Set

from models import EscrowStatus
from utils.exception_handler import InvalidStateTransition

logger = logging.getLogger(__name__)


class EscrowStateValidator:
    """Validates escrow state transitions against the custody state machine"""

    VALID_TRANSITIONS: Dict[EscrowStatus, Set[EscrowStatus]] = {
        # PENDING: awaiting client payment capture
        EscrowStatus.PENDING: {
            EscrowStatus.FUNDED,
            EscrowStatus.CANCELLED,
        },
        # FUNDED: money held by the platform
        EscrowStatus.FUNDED: {
            EscrowStatus.RELEASED,
            EscrowStatus.REFUNDED,
            EscrowStatus.DISPUTED,
        },
        # DISPUTED: frozen until an operator resolves the dispute
        EscrowStatus.DISPUTED: {
            EscrowStatus.FUNDED,
            EscrowStatus.RELEASED,
            EscrowStatus.REFUNDED,
        },
        EscrowStatus.RELEASED: set(),
        EscrowStatus.REFUNDED: set(),
        EscrowStatus.CANCELLED: set(),
    }

    TERMINAL_STATES: Set[EscrowStatus] = {
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
        EscrowStatus.CANCELLED,
    }

    @classmethod
    def is_terminal(cls, status: EscrowStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def is_valid_transition(
        cls, current: EscrowStatus, target: EscrowStatus, via_dispute: bool = False
    ) -> bool:
        """Check a transition without raising"""
        if target not in cls.VALID_TRANSITIONS.get(current, set()):
            return False
        # Entering or leaving Disputed is reserved for the dispute path
        if current == EscrowStatus.DISPUTED or target == EscrowStatus.DISPUTED:
            return via_dispute
        return True

    @classmethod
    def validate_transition(
        cls, current: EscrowStatus, target: EscrowStatus, escrow_id=None, via_dispute: bool = False
    ) -> None:
        """
        Raise InvalidStateTransition unless current -> target is allowed.

        Args:
            current: Freshly read stored status
            target: Requested status
            escrow_id: For log context
            via_dispute: True only when the dispute engine drives the change
        """
        if cls.is_valid_transition(current, target, via_dispute=via_dispute):
            return

        if cls.is_terminal(current):
            reason = f"escrow is already {current.value} (terminal)"
        elif current == EscrowStatus.DISPUTED:
            reason = "disputed escrows change state only through dispute resolution"
        elif target == EscrowStatus.DISPUTED:
            reason = "escrows enter dispute only when a dispute is opened"
        else:
            reason = f"{current.value} -> {target.value} is not a permitted transition"

        logger.warning(
            f"🚫 INVALID_TRANSITION: escrow {escrow_id} {current.value} -> {target.value}: {reason}"
        )
        raise InvalidStateTransition(
            f"Cannot move escrow {escrow_id} from {current.value} to {target.value}: {reason}",
            current_state=current,
            target_state=target,
        )

    @classmethod
    def allowed_targets(cls, current: EscrowStatus, via_dispute: bool = False) -> Set[EscrowStatus]:
        return {
            target for target in cls.VALID_TRANSITIONS.get(current, set())
            if cls.is_valid_transition(current, target, via_dispute=via_dispute)
        }
