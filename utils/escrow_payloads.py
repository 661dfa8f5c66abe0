"""
Explicit per-operation payload types.

Request bodies arrive as plain dicts (camelCase keys from the HTTP layer).
Each operation parses its body into one of these dataclasses; unknown keys,
wrong types and out-of-range values raise ValidationError before any escrow
is loaded.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from config import Config
from models import Ruling
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_errors import ValidationError


def _wire(name: str, **kwargs):
    """Dataclass field with the camelCase key it is read from"""
    metadata = {"wire": name}
    return field(metadata=metadata, **kwargs)


def _require_text(value: Any, name: str, min_len: int = 1, max_len: Optional[int] = None) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string", {"field": name})
    text = value.strip()
    if len(text) < min_len:
        if min_len <= 1:
            raise ValidationError(f"{name} is required", {"field": name})
        raise ValidationError(f"{name} must be at least {min_len} characters", {"field": name})
    if max_len is not None and len(text) > max_len:
        raise ValidationError(f"{name} must be at most {max_len} characters", {"field": name})
    return text


def _optional_text(value: Any, name: str, max_len: int) -> Optional[str]:
    if value is None:
        return None
    text = _require_text(value, name, min_len=0, max_len=max_len)
    return text or None


def _require_int(value: Any, name: str, min_val: int, max_val: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            value = int(value.strip())
        else:
            raise ValidationError(f"{name} must be an integer", {"field": name})
    if not min_val <= value <= max_val:
        raise ValidationError(f"{name} must be between {min_val} and {max_val}", {"field": name})
    return value


class Payload:
    """Base class: strict dict → dataclass parsing"""

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]):
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValidationError("Request body must be a JSON object")

        wire_to_attr = {f.metadata.get("wire", f.name): f.name for f in fields(cls)}
        unknown = sorted(set(data) - set(wire_to_attr))
        if unknown:
            raise ValidationError(
                f"Unknown field(s): {', '.join(unknown)}",
                {"unknownFields": unknown, "allowedFields": sorted(wire_to_attr)},
            )

        kwargs = {wire_to_attr[key]: value for key, value in data.items()}
        try:
            return cls(**kwargs)
        except TypeError as e:
            # Missing required field
            raise ValidationError(f"Invalid request body: {e}") from e


@dataclass
class EmptyPayload(Payload):
    """agree, fund, receive, accept, refund take no body"""


@dataclass
class CreateEscrowPayload(Payload):
    title: str = _wire("title")
    amount: Decimal = _wire("amount")
    seller_username: str = _wire("sellerUsername")
    description: Optional[str] = _wire("description", default=None)
    category: Optional[str] = _wire("category", default=None)
    inspection_days: int = _wire("inspectionDays", default=Config.DEFAULT_INSPECTION_DAYS)
    expires_in_days: int = _wire("expiresInDays", default=Config.DEFAULT_EXPIRES_IN_DAYS)

    def __post_init__(self):
        self.title = _require_text(self.title, "title", 3, 100)
        self.seller_username = _require_text(self.seller_username, "sellerUsername", 1, 32)
        self.description = _optional_text(self.description, "description", 500)
        self.category = _optional_text(self.category, "category", 50)
        self.inspection_days = _require_int(self.inspection_days, "inspectionDays", 1, 30)
        self.expires_in_days = _require_int(self.expires_in_days, "expiresInDays", 1, 90)

        if isinstance(self.amount, float):
            self.amount = str(self.amount)
        try:
            amount = MonetaryDecimal.quantize_crypto(self.amount)
        except ValueError as e:
            raise ValidationError("amount must be a number", {"field": "amount"}) from e
        if amount <= 0:
            raise ValidationError("amount must be positive", {"field": "amount"})
        if amount > Config.MAX_ESCROW_AMOUNT_BTC:
            raise ValidationError(f"amount cannot exceed {Config.MAX_ESCROW_AMOUNT_BTC} BTC", {"field": "amount"})
        self.amount = amount


@dataclass
class ShipPayload(Payload):
    tracking_info: str = _wire("trackingInfo")
    notes: Optional[str] = _wire("notes", default=None)

    def __post_init__(self):
        self.tracking_info = _require_text(self.tracking_info, "trackingInfo", 1, 500)
        self.notes = _optional_text(self.notes, "notes", 500)


@dataclass
class ReturnShipPayload(Payload):
    tracking_info: str = _wire("trackingInfo")

    def __post_init__(self):
        self.tracking_info = _require_text(self.tracking_info, "trackingInfo", 1, 500)


@dataclass
class RejectPayload(Payload):
    reason: str = _wire("reason")

    def __post_init__(self):
        self.reason = _require_text(self.reason, "reason", 10, 500)


@dataclass
class DisputePayload(Payload):
    reason: str = _wire("reason")
    evidence: Optional[str] = _wire("evidence", default=None)

    def __post_init__(self):
        self.reason = _require_text(self.reason, "reason", 10, 500)
        self.evidence = _optional_text(self.evidence, "evidence", 1000)


@dataclass
class ResolvePayload(Payload):
    ruling: str = _wire("ruling")
    split_percentage: int = _wire("splitPercentage", default=100)
    notes: Optional[str] = _wire("notes", default=None)

    def __post_init__(self):
        if isinstance(self.ruling, Ruling):
            self.ruling = self.ruling.value
        if self.ruling not in {r.value for r in Ruling}:
            raise ValidationError("ruling must be BUYER or SELLER", {"field": "ruling"})
        self.split_percentage = _require_int(self.split_percentage, "splitPercentage", 1, 100)
        self.notes = _optional_text(self.notes, "notes", 500)


def as_wire_dict(payload: Payload) -> Dict[str, Any]:
    """Inverse of from_dict, used for audit details"""
    result = {}
    for f in fields(payload):
        value = getattr(payload, f.name)
        if isinstance(value, Decimal):
            value = format(value, "f")
        result[f.metadata.get("wire", f.name)] = value
    return result
