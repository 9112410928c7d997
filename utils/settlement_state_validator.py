"""
Settlement State Transition Validator
=====================================

Guards the settlement lifecycle for both ramp directions.

On-ramp:  CREATED -> PAYMENT_VERIFIED -> COMPLETED | FAILED
          CREATED -> CANCELLED, CREATED -> FAILED (proof rejected)
          FAILED -> COMPLETED (explicit retry only)
Off-ramp: WITHDRAWAL_REQUESTED -> DEPOSIT_VERIFIED -> PAYOUT_INITIATED -> COMPLETED
          WITHDRAWAL_REQUESTED -> CANCELLED
"""

import logging
from typing import Dict, Set, Tuple, Union
from models import SettlementStatus, SettlementDirection
from services.settlement_errors import ValidationError

logger = logging.getLogger(__name__)


class StateTransitionError(ValidationError):
    """Raised when an invalid state transition is attempted"""
    pass


StatusLike = Union[SettlementStatus, str]
DirectionLike = Union[SettlementDirection, str]


def _status(value: StatusLike) -> SettlementStatus:
    return value if isinstance(value, SettlementStatus) else SettlementStatus(value)


def _direction(value: DirectionLike) -> SettlementDirection:
    return value if isinstance(value, SettlementDirection) else SettlementDirection(value)


class SettlementStateValidator:
    """Validates settlement state transitions per direction"""

    ON_RAMP_TRANSITIONS: Dict[SettlementStatus, Set[SettlementStatus]] = {
        SettlementStatus.CREATED: {
            SettlementStatus.PAYMENT_VERIFIED,
            SettlementStatus.CANCELLED,
            SettlementStatus.FAILED,
        },
        SettlementStatus.PAYMENT_VERIFIED: {
            SettlementStatus.COMPLETED,
            SettlementStatus.FAILED,
        },
        SettlementStatus.COMPLETED: set(),
        SettlementStatus.CANCELLED: set(),
        SettlementStatus.FAILED: set(),
    }

    OFF_RAMP_TRANSITIONS: Dict[SettlementStatus, Set[SettlementStatus]] = {
        SettlementStatus.WITHDRAWAL_REQUESTED: {
            SettlementStatus.DEPOSIT_VERIFIED,
            SettlementStatus.CANCELLED,
        },
        SettlementStatus.DEPOSIT_VERIFIED: {
            SettlementStatus.PAYOUT_INITIATED,
        },
        SettlementStatus.PAYOUT_INITIATED: {
            SettlementStatus.COMPLETED,
        },
        SettlementStatus.COMPLETED: set(),
        SettlementStatus.CANCELLED: set(),
    }

    # Only reachable through retry_transfer
    RETRY_TRANSITIONS: Dict[SettlementStatus, Set[SettlementStatus]] = {
        SettlementStatus.FAILED: {SettlementStatus.COMPLETED},
    }

    TERMINAL_STATES: Set[SettlementStatus] = {
        SettlementStatus.COMPLETED,
        SettlementStatus.CANCELLED,
        SettlementStatus.FAILED,
    }

    INITIAL_STATES: Dict[SettlementDirection, SettlementStatus] = {
        SettlementDirection.ON_RAMP: SettlementStatus.CREATED,
        SettlementDirection.OFF_RAMP: SettlementStatus.WITHDRAWAL_REQUESTED,
    }

    @classmethod
    def _table(cls, direction: DirectionLike) -> Dict[SettlementStatus, Set[SettlementStatus]]:
        if _direction(direction) == SettlementDirection.ON_RAMP:
            return cls.ON_RAMP_TRANSITIONS
        return cls.OFF_RAMP_TRANSITIONS

    @classmethod
    def initial_state(cls, direction: DirectionLike) -> SettlementStatus:
        return cls.INITIAL_STATES[_direction(direction)]

    @classmethod
    def is_terminal(cls, status: StatusLike) -> bool:
        return _status(status) in cls.TERMINAL_STATES

    @classmethod
    def valid_next_states(cls, direction: DirectionLike, current: StatusLike, retry: bool = False) -> Set[SettlementStatus]:
        current = _status(current)
        next_states = set(cls._table(direction).get(current, set()))
        if retry and _direction(direction) == SettlementDirection.ON_RAMP:
            next_states |= cls.RETRY_TRANSITIONS.get(current, set())
        return next_states

    @classmethod
    def validate_transition(
        cls,
        direction: DirectionLike,
        current: StatusLike,
        new: StatusLike,
        retry: bool = False,
    ) -> Tuple[bool, str]:
        """
        Check whether current -> new is allowed for the direction.

        Returns:
            (is_valid, reason)
        """
        try:
            current_status = _status(current)
            new_status = _status(new)
            direction_value = _direction(direction)
        except ValueError as e:
            return False, f"Unknown status or direction: {e}"

        table = cls._table(direction_value)
        if current_status not in table:
            return False, f"{current_status.value} is not a {direction_value.value} state"

        if new_status in cls.valid_next_states(direction_value, current_status, retry=retry):
            return True, "ok"

        if current_status == new_status:
            return False, f"Record is already {current_status.value}"
        if cls.is_terminal(current_status) and not retry:
            return False, f"{current_status.value} is terminal"
        return False, f"Transition {current_status.value} -> {new_status.value} not allowed for {direction_value.value}"

    @classmethod
    def validate_and_transition(
        cls,
        direction: DirectionLike,
        current: StatusLike,
        new: StatusLike,
        record_ref: str = "",
        retry: bool = False,
    ) -> SettlementStatus:
        """Validate a transition and return the new status or raise StateTransitionError"""
        is_valid, reason = cls.validate_transition(direction, current, new, retry=retry)
        if not is_valid:
            logger.warning(f"🚫 SETTLEMENT_STATE: Rejected transition for {record_ref}: {reason}")
            raise StateTransitionError(reason)
        return _status(new)
