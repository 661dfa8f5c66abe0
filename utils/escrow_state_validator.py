"""
Escrow State Transition Validator
================================

Single source of truth for the escrow lifecycle graph. Every operation names
the statuses it may start from and the status it produces; anything else is
rejected with InvalidStateError before any field, balance or history row is
touched.
"""

import logging
from typing import Dict, FrozenSet, Optional, Set, Tuple, Union
from models import EscrowStatus
from utils.escrow_errors import InvalidStateError

logger = logging.getLogger(__name__)

StatusLike = Union[EscrowStatus, str]


def _build_transition_graph(rules) -> Dict[EscrowStatus, Set[EscrowStatus]]:
    graph: Dict[EscrowStatus, Set[EscrowStatus]] = {status: set() for status in EscrowStatus}
    for sources, target in rules.values():
        for source in sources:
            graph[source].add(target)
    return graph


class EscrowStateValidator:
    """
    Validates escrow state transitions to ensure business logic integrity.

    Prevents invalid transitions like:
    - RELEASED -> anything (terminal)
    - AWAITING_AGREEMENT -> FUNDED (skipping agreement)
    - DISPUTED -> RELEASED (bypassing arbitration)
    """

    # Operation -> (allowed source statuses, resulting status)
    # agree resolves to CREATED only once both parties have agreed
    OPERATION_RULES: Dict[str, Tuple[FrozenSet[EscrowStatus], EscrowStatus]] = {
        "agree": (frozenset({EscrowStatus.AWAITING_AGREEMENT}), EscrowStatus.CREATED),
        "fund": (frozenset({EscrowStatus.CREATED}), EscrowStatus.FUNDED),
        "confirm_deposit": (frozenset({EscrowStatus.CREATED}), EscrowStatus.FUNDED),
        "ship": (frozenset({EscrowStatus.FUNDED}), EscrowStatus.SHIPPED),
        "receive": (frozenset({EscrowStatus.SHIPPED}), EscrowStatus.INSPECTION),
        # DELIVERED is a deprecated status kept for rows written by older clients
        "accept": (frozenset({EscrowStatus.INSPECTION, EscrowStatus.DELIVERED}), EscrowStatus.RELEASED),
        "auto_accept": (frozenset({EscrowStatus.INSPECTION}), EscrowStatus.RELEASED),
        "reject": (frozenset({EscrowStatus.INSPECTION}), EscrowStatus.REJECTED),
        "return_ship": (frozenset({EscrowStatus.REJECTED}), EscrowStatus.RETURN_SHIPPED),
        "refund": (frozenset({EscrowStatus.RETURN_SHIPPED}), EscrowStatus.REFUNDED),
        "dispute": (
            frozenset({EscrowStatus.FUNDED, EscrowStatus.SHIPPED, EscrowStatus.INSPECTION, EscrowStatus.REJECTED}),
            EscrowStatus.DISPUTED,
        ),
        "resolve": (frozenset({EscrowStatus.DISPUTED}), EscrowStatus.RESOLVED),
        "expire": (frozenset({EscrowStatus.FUNDED}), EscrowStatus.EXPIRED),
    }

    # Terminal states: no transitions allowed
    TERMINAL_STATES: Set[EscrowStatus] = {
        EscrowStatus.RELEASED,
        EscrowStatus.RESOLVED,
        EscrowStatus.REFUNDED,
        EscrowStatus.EXPIRED,
    }

    # States in which the buyer's funds sit in escrow
    FUNDS_HELD_STATES: Set[EscrowStatus] = {
        EscrowStatus.FUNDED,
        EscrowStatus.SHIPPED,
        EscrowStatus.DELIVERED,
        EscrowStatus.INSPECTION,
        EscrowStatus.REJECTED,
        EscrowStatus.RETURN_SHIPPED,
        EscrowStatus.DISPUTED,
    }

    # Full transition graph derived from the operation rules
    VALID_TRANSITIONS: Dict[EscrowStatus, Set[EscrowStatus]] = _build_transition_graph(OPERATION_RULES)

    @staticmethod
    def _as_status(status: StatusLike) -> EscrowStatus:
        return status if isinstance(status, EscrowStatus) else EscrowStatus(status)

    @classmethod
    def validate_transition(
        cls,
        from_status: StatusLike,
        to_status: StatusLike,
        escrow_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        escrow_ref = f"Escrow {escrow_id}" if escrow_id else "Escrow"
        try:
            from_enum = cls._as_status(from_status)
            to_enum = cls._as_status(to_status)
        except ValueError as e:
            logger.error(f"❌ INVALID_STATUS: {escrow_ref}: {e}")
            return False, str(e)

        if from_enum in cls.TERMINAL_STATES:
            reason = f"{escrow_ref} is in terminal state {from_enum.value}"
            logger.warning(f"❌ INVALID_TRANSITION: {reason}")
            return False, reason

        if to_enum in cls.VALID_TRANSITIONS.get(from_enum, set()):
            logger.debug(f"✅ VALID_TRANSITION: {escrow_ref} {from_enum.value} → {to_enum.value}")
            return True, "Valid transition"

        reason = f"{escrow_ref}: transition {from_enum.value} → {to_enum.value} is not allowed"
        logger.warning(f"❌ INVALID_TRANSITION: {reason}")
        return False, reason

    @classmethod
    def is_valid_transition(cls, from_status: StatusLike, to_status: StatusLike) -> bool:
        """Boolean convenience wrapper around validate_transition"""
        is_valid, _ = cls.validate_transition(from_status, to_status)
        return is_valid

    @classmethod
    def require_operation(cls, operation: str, current_status: StatusLike, escrow_id: Optional[str] = None) -> EscrowStatus:
        """
        Check that `operation` may run from `current_status`.

        Returns the status the operation produces; raises InvalidStateError otherwise.
        """
        if operation not in cls.OPERATION_RULES:
            raise KeyError(f"Unknown escrow operation: {operation}")

        allowed_sources, target = cls.OPERATION_RULES[operation]
        current = cls._as_status(current_status)
        if current not in allowed_sources:
            allowed = ", ".join(sorted(s.value for s in allowed_sources))
            logger.warning(
                f"❌ INVALID_TRANSITION: {operation} on escrow {escrow_id} "
                f"from {current.value} (allowed from: {allowed})"
            )
            raise InvalidStateError(
                f"Cannot {operation.replace('_', ' ')} escrow in status {current.value}",
                {"escrowId": escrow_id, "status": current.value, "allowedFrom": sorted(s.value for s in allowed_sources)},
            )
        return target

    @classmethod
    def get_valid_next_states(cls, current_status: StatusLike) -> Set[EscrowStatus]:
        """Statuses reachable in one transition from `current_status`"""
        return set(cls.VALID_TRANSITIONS.get(cls._as_status(current_status), set()))

    @classmethod
    def is_terminal_state(cls, status: StatusLike) -> bool:
        return cls._as_status(status) in cls.TERMINAL_STATES

    @classmethod
    def holds_funds(cls, status: StatusLike) -> bool:
        return cls._as_status(status) in cls.FUNDS_HELD_STATES
