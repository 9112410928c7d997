"""
Settlement lifecycle transition tests for both ramp directions.
"""
import pytest

from models import SettlementDirection, SettlementStatus
from utils.settlement_state_validator import SettlementStateValidator, StateTransitionError

ON = SettlementDirection.ON_RAMP
OFF = SettlementDirection.OFF_RAMP
S = SettlementStatus


class TestOnrampTransitions:

    @pytest.mark.parametrize("current,new", [
        (S.CREATED, S.PAYMENT_VERIFIED),
        (S.CREATED, S.CANCELLED),
        (S.CREATED, S.FAILED),
        (S.PAYMENT_VERIFIED, S.COMPLETED),
        (S.PAYMENT_VERIFIED, S.FAILED),
    ])
    def test_allowed(self, current, new):
        is_valid, _ = SettlementStateValidator.validate_transition(ON, current, new)
        assert is_valid

    @pytest.mark.parametrize("current,new", [
        (S.CREATED, S.COMPLETED),
        (S.PAYMENT_VERIFIED, S.CANCELLED),
        (S.COMPLETED, S.FAILED),
        (S.CANCELLED, S.CREATED),
        (S.FAILED, S.COMPLETED),
        (S.CREATED, S.DEPOSIT_VERIFIED),
    ])
    def test_rejected(self, current, new):
        is_valid, reason = SettlementStateValidator.validate_transition(ON, current, new)
        assert not is_valid
        assert reason

    def test_failed_to_completed_only_on_retry(self):
        assert SettlementStateValidator.validate_transition(ON, S.FAILED, S.COMPLETED, retry=True)[0]
        assert S.COMPLETED in SettlementStateValidator.valid_next_states(ON, S.FAILED, retry=True)
        assert not SettlementStateValidator.valid_next_states(ON, S.FAILED)

    def test_accepts_string_values(self):
        assert SettlementStateValidator.validate_transition("on_ramp", "created", "payment_verified")[0]

    def test_unknown_status_reported(self):
        is_valid, reason = SettlementStateValidator.validate_transition(ON, "bogus", S.COMPLETED)
        assert not is_valid
        assert "Unknown" in reason


class TestOfframpTransitions:

    def test_happy_path(self):
        path = [S.WITHDRAWAL_REQUESTED, S.DEPOSIT_VERIFIED, S.PAYOUT_INITIATED, S.COMPLETED]
        for current, new in zip(path, path[1:]):
            assert SettlementStateValidator.validate_and_transition(OFF, current, new) == new

    def test_cannot_cancel_after_deposit(self):
        with pytest.raises(StateTransitionError):
            SettlementStateValidator.validate_and_transition(OFF, S.DEPOSIT_VERIFIED, S.CANCELLED)

    def test_no_retry_edge_for_offramp(self):
        is_valid, _ = SettlementStateValidator.validate_transition(OFF, S.FAILED, S.COMPLETED, retry=True)
        assert not is_valid

    def test_onramp_state_not_valid_for_offramp(self):
        is_valid, reason = SettlementStateValidator.validate_transition(OFF, S.CREATED, S.CANCELLED)
        assert not is_valid
        assert "not a off_ramp state" in reason


class TestHelpers:

    def test_initial_states(self):
        assert SettlementStateValidator.initial_state(ON) == S.CREATED
        assert SettlementStateValidator.initial_state("off_ramp") == S.WITHDRAWAL_REQUESTED

    @pytest.mark.parametrize("status", [S.COMPLETED, S.CANCELLED, S.FAILED])
    def test_terminal(self, status):
        assert SettlementStateValidator.is_terminal(status)

    def test_non_terminal(self):
        assert not SettlementStateValidator.is_terminal(S.PAYOUT_INITIATED)

    def test_state_transition_error_is_validation_error(self):
        with pytest.raises(StateTransitionError) as exc_info:
            SettlementStateValidator.validate_and_transition(ON, S.COMPLETED, S.CREATED, record_ref="ONR-1")
        assert exc_info.value.http_status == 400
