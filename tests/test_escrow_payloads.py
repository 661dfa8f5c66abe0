"""
Request payload parsing tests
"""

from decimal import Decimal

import pytest

from utils.escrow_errors import ValidationError
from utils.escrow_payloads import (
    CreateEscrowPayload, DisputePayload, EmptyPayload, RejectPayload, ResolvePayload, ShipPayload, as_wire_dict,
)


class TestCreateEscrowPayload:

    def test_minimal_body_uses_defaults(self):
        payload = CreateEscrowPayload.from_dict({"title": "Camera", "amount": "0.5", "sellerUsername": "bob"})

        assert payload.amount == Decimal("0.5")
        assert payload.inspection_days == 3
        assert payload.expires_in_days == 14
        assert payload.description is None

    def test_strings_are_trimmed(self):
        payload = CreateEscrowPayload.from_dict(
            {"title": "  Camera  ", "amount": 1, "sellerUsername": " bob ", "description": "   "})
        assert payload.title == "Camera"
        assert payload.seller_username == "bob"
        assert payload.description is None

    def test_amount_quantized_to_satoshi(self):
        payload = CreateEscrowPayload.from_dict(
            {"title": "Camera", "amount": "0.123456789", "sellerUsername": "bob"})
        assert payload.amount == Decimal("0.12345679")

    def test_numeric_strings_accepted_for_days(self):
        payload = CreateEscrowPayload.from_dict(
            {"title": "Camera", "amount": "1", "sellerUsername": "bob", "inspectionDays": "7"})
        assert payload.inspection_days == 7

    @pytest.mark.parametrize("body,field", [
        ({"title": "Ca", "amount": "1", "sellerUsername": "bob"}, "title"),
        ({"title": "Camera", "amount": "0", "sellerUsername": "bob"}, "amount"),
        ({"title": "Camera", "amount": "-1", "sellerUsername": "bob"}, "amount"),
        ({"title": "Camera", "amount": "lots", "sellerUsername": "bob"}, "amount"),
        ({"title": "Camera", "amount": "1", "sellerUsername": ""}, "sellerUsername"),
        ({"title": "Camera", "amount": "1", "sellerUsername": "bob", "inspectionDays": 31}, "inspectionDays"),
        ({"title": "Camera", "amount": "1", "sellerUsername": "bob", "inspectionDays": True}, "inspectionDays"),
        ({"title": "Camera", "amount": "1", "sellerUsername": "bob", "expiresInDays": 0}, "expiresInDays"),
    ])
    def test_invalid_values(self, body, field):
        with pytest.raises(ValidationError) as exc_info:
            CreateEscrowPayload.from_dict(body)
        assert exc_info.value.details["field"] == field

    def test_amount_above_supply_cap(self):
        with pytest.raises(ValidationError):
            CreateEscrowPayload.from_dict({"title": "Camera", "amount": "21000001", "sellerUsername": "bob"})

    def test_missing_required_field(self):
        with pytest.raises(ValidationError):
            CreateEscrowPayload.from_dict({"title": "Camera", "sellerUsername": "bob"})

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            CreateEscrowPayload.from_dict(
                {"title": "Camera", "amount": "1", "sellerUsername": "bob", "buyerId": 7})
        assert exc_info.value.details["unknownFields"] == ["buyerId"]

    def test_wire_dict_uses_camel_case(self):
        payload = CreateEscrowPayload.from_dict({"title": "Camera", "amount": "0.5", "sellerUsername": "bob"})
        wire = as_wire_dict(payload)
        assert wire["sellerUsername"] == "bob"
        assert wire["amount"] == "0.50000000"


class TestTransitionPayloads:

    def test_empty_payload_accepts_none_and_empty(self):
        assert EmptyPayload.from_dict(None) == EmptyPayload()
        assert EmptyPayload.from_dict({}) == EmptyPayload()

    def test_empty_payload_rejects_fields(self):
        with pytest.raises(ValidationError):
            EmptyPayload.from_dict({"force": True})

    def test_body_must_be_mapping(self):
        with pytest.raises(ValidationError):
            ShipPayload.from_dict(["TRACK"])

    def test_ship_requires_tracking(self):
        with pytest.raises(ValidationError):
            ShipPayload.from_dict({"trackingInfo": "   "})

    def test_reject_reason_minimum_length(self):
        with pytest.raises(ValidationError):
            RejectPayload.from_dict({"reason": "bad"})

    def test_dispute_evidence_optional(self):
        payload = DisputePayload.from_dict({"reason": "Item never arrived"})
        assert payload.evidence is None

    def test_resolve_defaults_to_full_split(self):
        payload = ResolvePayload.from_dict({"ruling": "SELLER"})
        assert payload.split_percentage == 100

    @pytest.mark.parametrize("body", [
        {"ruling": "ARBITER"},
        {"ruling": "BUYER", "splitPercentage": 0},
        {"ruling": "BUYER", "splitPercentage": 101},
        {"ruling": "BUYER", "splitPercentage": 50.5},
    ])
    def test_resolve_invalid(self, body):
        with pytest.raises(ValidationError):
            ResolvePayload.from_dict(body)
