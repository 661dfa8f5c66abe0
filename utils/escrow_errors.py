"""
Escrow engine error taxonomy.

Every recoverable failure raised by the engine derives from EscrowError and
carries a stable ``code`` plus an HTTP-style ``status``. The call boundary
(services.escrow_operations) converts them into structured result dicts.
DerivationIndexCollisionError is intentionally outside this hierarchy: it
signals a broken invariant and must propagate.
"""

from typing import Any, Dict, Optional


class EscrowError(Exception):
    """Base class for recoverable escrow engine failures"""

    code = "ESCROW_ERROR"
    status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code, "message": self.message, "status": self.status}
        if self.details:
            error["details"] = self.details
        return error


class NotFoundError(EscrowError):
    """Unknown escrow or user"""
    code = "NOT_FOUND"
    status = 404


class InvalidStateError(EscrowError):
    """Transition is illegal for the escrow's current status"""
    code = "INVALID_STATE"
    status = 409


class ForbiddenError(EscrowError):
    """Caller lacks the role required for this transition"""
    code = "FORBIDDEN"
    status = 403


class ValidationError(EscrowError):
    """Malformed payload"""
    code = "VALIDATION_ERROR"
    status = 422


class InsufficientFundsError(EscrowError):
    """Wallet balance below the amount required"""
    code = "INSUFFICIENT_FUNDS"
    status = 400


class ExternalUnavailableError(EscrowError):
    """Chain-observation API unreachable or returned an error"""
    code = "EXTERNAL_UNAVAILABLE"
    status = 503


class AlreadyAgreedError(EscrowError):
    """Party has already agreed to the escrow terms"""
    code = "ALREADY_AGREED"
    status = 409


class DerivationIndexCollisionError(RuntimeError):
    """A derivation index was allocated twice; custody keys would be reused"""
