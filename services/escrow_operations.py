"""
Escrow operations boundary

Entry point for the thin HTTP layer. Parses request bodies into explicit
payload types, maps legacy operation names onto the canonical ones and turns
engine exceptions into structured result dicts:

    {"success": True, "escrow": {...}}
    {"success": False, "error": {"code", "message", "status", "details"?}}

DerivationIndexCollisionError is not an EscrowError and propagates.
"""

import logging
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Type

from services.escrow_service import EscrowService
from utils.escrow_errors import EscrowError, ValidationError
from utils.escrow_payloads import (
    CreateEscrowPayload, DisputePayload, EmptyPayload, Payload, RejectPayload, ResolvePayload,
    ReturnShipPayload, ShipPayload,
)

logger = logging.getLogger(__name__)


class OperationSpec(NamedTuple):
    payload_type: Type[Payload]
    handler: Callable[..., Dict[str, Any]]
    takes_payload: bool


class EscrowOperations:
    """Named escrow operations with result-dict error handling"""

    OPERATIONS: Dict[str, OperationSpec] = {
        "agree": OperationSpec(EmptyPayload, EscrowService.agree, False),
        "fund": OperationSpec(EmptyPayload, EscrowService.fund, False),
        "ship": OperationSpec(ShipPayload, EscrowService.ship, True),
        "receive": OperationSpec(EmptyPayload, EscrowService.receive, False),
        "accept": OperationSpec(EmptyPayload, EscrowService.accept, False),
        "reject": OperationSpec(RejectPayload, EscrowService.reject, True),
        "return_ship": OperationSpec(ReturnShipPayload, EscrowService.return_ship, True),
        "refund": OperationSpec(EmptyPayload, EscrowService.refund, False),
        "dispute": OperationSpec(DisputePayload, EscrowService.dispute, True),
        "resolve": OperationSpec(ResolvePayload, EscrowService.resolve, True),
    }

    # Legacy and route-style names
    ALIASES: Dict[str, str] = {
        "deliver": "ship",
        "release": "accept",
        "returnShip": "return_ship",
        "return-ship": "return_ship",
    }

    @staticmethod
    def _failure(error: EscrowError) -> Dict[str, Any]:
        return {"success": False, "error": error.to_dict()}

    @classmethod
    def _run(cls, label: str, func: Callable[[], Any], key: str = "escrow") -> Dict[str, Any]:
        try:
            return {"success": True, key: func()}
        except EscrowError as e:
            log = logger.error if e.status >= 500 else logger.info
            log(f"⚠️ OPERATION_REJECTED: {label} - {e.code}: {e.message}")
            return cls._failure(e)

    @classmethod
    def canonical_name(cls, operation: str) -> str:
        name = cls.ALIASES.get(operation, operation)
        if name not in cls.OPERATIONS:
            raise ValidationError(f"Unknown operation '{operation}'", {"operation": operation})
        return name

    @classmethod
    def perform(
        cls, operation: str, escrow_id: str, acting_user_id: int, payload: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run a named transition on behalf of `acting_user_id`"""
        try:
            name = cls.canonical_name(operation)
            spec = cls.OPERATIONS[name]
            parsed = spec.payload_type.from_dict(payload)
        except ValidationError as e:
            logger.info(f"⚠️ OPERATION_REJECTED: {operation} on {escrow_id} - {e.code}: {e.message}")
            return cls._failure(e)

        if name != operation and operation in cls.ALIASES:
            logger.debug(f"🔀 OPERATION_ALIAS: {operation} → {name}")

        if spec.takes_payload:
            return cls._run(f"{name} on {escrow_id}", lambda: spec.handler(escrow_id, acting_user_id, parsed))
        return cls._run(f"{name} on {escrow_id}", lambda: spec.handler(escrow_id, acting_user_id))

    @classmethod
    def create(cls, acting_user_id: int, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Create an escrow with the acting user as buyer"""
        try:
            parsed = CreateEscrowPayload.from_dict(payload)
        except ValidationError as e:
            logger.info(f"⚠️ OPERATION_REJECTED: create by user {acting_user_id} - {e.message}")
            return cls._failure(e)
        return cls._run(f"create by user {acting_user_id}", lambda: EscrowService.create_escrow(acting_user_id, parsed))

    @classmethod
    def get_by_id(cls, escrow_id: str) -> Dict[str, Any]:
        return cls._run(f"get {escrow_id}", lambda: EscrowService.get_by_id(escrow_id))

    @classmethod
    def query(cls, func: Callable[..., Any], *args, **kwargs) -> Dict[str, Any]:
        """Wrap a read-side accessor: {"success": True, "data": ...} or an error result"""
        return cls._run(getattr(func, "__name__", "query"), lambda: func(*args, **kwargs), key="data")

    # Named shortcuts for the HTTP layer

    @classmethod
    def agree(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("agree", escrow_id, user_id, payload)

    @classmethod
    def fund(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("fund", escrow_id, user_id, payload)

    @classmethod
    def ship(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("ship", escrow_id, user_id, payload)

    @classmethod
    def deliver(cls, escrow_id: str, user_id: int, payload=None):
        """Deprecated name for ship"""
        return cls.perform("deliver", escrow_id, user_id, payload)

    @classmethod
    def receive(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("receive", escrow_id, user_id, payload)

    @classmethod
    def accept(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("accept", escrow_id, user_id, payload)

    @classmethod
    def release(cls, escrow_id: str, user_id: int, payload=None):
        """Deprecated name for accept"""
        return cls.perform("release", escrow_id, user_id, payload)

    @classmethod
    def reject(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("reject", escrow_id, user_id, payload)

    @classmethod
    def return_ship(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("return_ship", escrow_id, user_id, payload)

    @classmethod
    def refund(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("refund", escrow_id, user_id, payload)

    @classmethod
    def dispute(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("dispute", escrow_id, user_id, payload)

    @classmethod
    def resolve(cls, escrow_id: str, user_id: int, payload=None):
        return cls.perform("resolve", escrow_id, user_id, payload)
