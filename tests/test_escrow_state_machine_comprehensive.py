"""
Comprehensive Test Suite for Escrow State Machine

Coverage Focus Areas:
- All valid state transitions
- Invalid state transition blocking
- Dispute-only transitions
- Terminal state validation
"""

import itertools

import pytest

from models import EscrowStatus
from utils.escrow_state_validator import EscrowStateValidator
from utils.exception_handler import InvalidStateTransition

ALLOWED_DIRECT = {
    (EscrowStatus.PENDING, EscrowStatus.FUNDED),
    (EscrowStatus.PENDING, EscrowStatus.CANCELLED),
    (EscrowStatus.FUNDED, EscrowStatus.RELEASED),
    (EscrowStatus.FUNDED, EscrowStatus.REFUNDED),
}

ALLOWED_VIA_DISPUTE = ALLOWED_DIRECT | {
    (EscrowStatus.FUNDED, EscrowStatus.DISPUTED),
    (EscrowStatus.DISPUTED, EscrowStatus.FUNDED),
    (EscrowStatus.DISPUTED, EscrowStatus.RELEASED),
    (EscrowStatus.DISPUTED, EscrowStatus.REFUNDED),
}


class TestEscrowStateValidator:
    """Test complete EscrowStateValidator coverage"""

    def test_transitions_from_pending(self):
        """Pending may be funded or cancelled, nothing else"""
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.PENDING, EscrowStatus.FUNDED) is True
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.PENDING, EscrowStatus.CANCELLED) is True
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.PENDING, EscrowStatus.RELEASED) is False
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.PENDING, EscrowStatus.REFUNDED) is False

    def test_transitions_from_funded(self):
        """Funded may be released or refunded directly"""
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED, EscrowStatus.RELEASED) is True
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED, EscrowStatus.REFUNDED) is True
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED, EscrowStatus.CANCELLED) is False
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED, EscrowStatus.PENDING) is False

    def test_dispute_entry_requires_dispute_path(self):
        """Funded -> Disputed only when a dispute is opened"""
        assert EscrowStateValidator.is_valid_transition(EscrowStatus.FUNDED, EscrowStatus.DISPUTED) is False
        assert EscrowStateValidator.is_valid_transition(
            EscrowStatus.FUNDED, EscrowStatus.DISPUTED, via_dispute=True
        ) is True

    def test_disputed_exits_only_via_resolution(self):
        """Direct transitions out of Disputed are rejected"""
        for target in (EscrowStatus.FUNDED, EscrowStatus.RELEASED, EscrowStatus.REFUNDED):
            assert EscrowStateValidator.is_valid_transition(EscrowStatus.DISPUTED, target) is False
            assert EscrowStateValidator.is_valid_transition(EscrowStatus.DISPUTED, target, via_dispute=True) is True
        assert EscrowStateValidator.is_valid_transition(
            EscrowStatus.DISPUTED, EscrowStatus.CANCELLED, via_dispute=True
        ) is False

    @pytest.mark.parametrize("terminal", [EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.CANCELLED])
    def test_terminal_states_have_no_exits(self, terminal):
        """Released, Refunded and Cancelled accept no transition"""
        assert EscrowStateValidator.is_terminal(terminal)
        assert EscrowStateValidator.allowed_targets(terminal, via_dispute=True) == set()
        for target in EscrowStatus:
            with pytest.raises(InvalidStateTransition) as exc_info:
                EscrowStateValidator.validate_transition(terminal, target, escrow_id=7, via_dispute=True)
            assert "terminal" in str(exc_info.value)
            assert exc_info.value.current_state == terminal

    def test_reachable_pairs_match_adjacency_list(self):
        """Exhaustive check of every (current, target) pair"""
        for current, target in itertools.product(EscrowStatus, EscrowStatus):
            direct = EscrowStateValidator.is_valid_transition(current, target)
            disputed = EscrowStateValidator.is_valid_transition(current, target, via_dispute=True)
            assert direct == ((current, target) in ALLOWED_DIRECT), (current, target)
            assert disputed == ((current, target) in ALLOWED_VIA_DISPUTE), (current, target)

    def test_validate_transition_error_carries_states(self):
        """InvalidStateTransition names both states"""
        with pytest.raises(InvalidStateTransition) as exc_info:
            EscrowStateValidator.validate_transition(EscrowStatus.PENDING, EscrowStatus.RELEASED, escrow_id=3)
        assert exc_info.value.current_state == EscrowStatus.PENDING
        assert exc_info.value.target_state == EscrowStatus.RELEASED
        assert "pending -> released" in str(exc_info.value)

    def test_disputed_error_message(self):
        """Direct transition out of Disputed explains the dispute path"""
        with pytest.raises(InvalidStateTransition, match="dispute resolution"):
            EscrowStateValidator.validate_transition(EscrowStatus.DISPUTED, EscrowStatus.RELEASED)

    def test_allowed_targets(self):
        """allowed_targets honours the dispute flag"""
        assert EscrowStateValidator.allowed_targets(EscrowStatus.FUNDED) == {
            EscrowStatus.RELEASED, EscrowStatus.REFUNDED,
        }
        assert EscrowStateValidator.allowed_targets(EscrowStatus.FUNDED, via_dispute=True) == {
            EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED,
        }
