"""
Shared test fixtures for the escrow engine

Key Components:
1. Temp-file SQLite database, rebuilt for every test
2. Custody in simulation mode by default, HD mode via `hd_custody`
3. User / escrow factories and a helper that drives an escrow to a status
"""

import logging
import os
import sys
import tempfile
from decimal import Decimal
from types import SimpleNamespace

import pytest

# Must be set before config/database are imported
_TEST_DB_DIR = tempfile.mkdtemp(prefix="escrow-engine-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'escrow_test.db')}"
os.environ["BTC_NETWORK"] = "testnet"
os.environ["BTC_MASTER_MNEMONIC"] = ""
os.environ.pop("AUDIT_LOG_FILE", None)

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import engine, managed_session  # noqa: E402
from models import Base, User, Wallet  # noqa: E402
from services.custody_address_service import CustodyAddressService, set_custody_service  # noqa: E402
from services.escrow_service import EscrowService  # noqa: E402
from services.wallet_service import WalletService  # noqa: E402
from utils.escrow_payloads import (  # noqa: E402
    CreateEscrowPayload, DisputePayload, RejectPayload, ReturnShipPayload, ShipPayload,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Standard BIP39 test vector; never holds funds
TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


@pytest.fixture(autouse=True)
def clean_database():
    """Fresh schema and simulation-mode custody for every test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    set_custody_service(CustodyAddressService(mnemonic=None, network="testnet"))
    yield
    set_custody_service(None)


@pytest.fixture
def hd_custody():
    service = CustodyAddressService(mnemonic=TEST_MNEMONIC, passphrase="", network="testnet")
    set_custody_service(service)
    return service


@pytest.fixture
def make_user():
    """Factory: create a user with a wallet, returns the user id"""
    counter = {"n": 0}

    def _make(username=None, balance="0", role="user", email="default", with_wallet=True):
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        with managed_session() as session:
            user = User(
                username=username,
                email=f"{username}@example.com" if email == "default" else email,
                role=role,
            )
            if with_wallet:
                user.wallet = Wallet(currency="BTC", available_balance=Decimal(balance))
            session.add(user)
            session.flush()
            return user.id

    return _make


@pytest.fixture
def parties(make_user):
    """Buyer with 1.0 BTC, seller with 0, an arbiter and an outsider"""
    return SimpleNamespace(
        buyer=make_user("alice", balance="1.0"),
        seller=make_user("bob", balance="0"),
        arbiter=make_user("arbiter", balance="0", role="admin"),
        outsider=make_user("mallory", balance="5.0"),
    )


@pytest.fixture
def balance_of():
    def _balance(user_id) -> Decimal:
        return Decimal(WalletService.wallet_balance(user_id)["availableBalance"])
    return _balance


@pytest.fixture
def create_escrow(parties):
    """Factory: create an escrow from `parties.buyer` to `parties.seller`"""
    def _create(**overrides):
        body = {"title": "Vintage camera", "amount": "0.1", "sellerUsername": "bob", "inspectionDays": 1}
        body.update(overrides)
        return EscrowService.create_escrow(parties.buyer, CreateEscrowPayload.from_dict(body))
    return _create


# Ordered path used by advance_escrow
_PATH = ["AWAITING_AGREEMENT", "CREATED", "FUNDED", "SHIPPED", "INSPECTION", "REJECTED", "RETURN_SHIPPED"]


@pytest.fixture
def advance_escrow(parties):
    """Drive an escrow along the normal path until it reaches `target`"""
    def _advance(escrow_id, target):
        steps = {
            "CREATED": lambda: (EscrowService.agree(escrow_id, parties.buyer),
                                EscrowService.agree(escrow_id, parties.seller))[-1],
            "FUNDED": lambda: EscrowService.fund(escrow_id, parties.buyer),
            "SHIPPED": lambda: EscrowService.ship(
                escrow_id, parties.seller, ShipPayload.from_dict({"trackingInfo": "1Z999AA10123456784"})),
            "INSPECTION": lambda: EscrowService.receive(escrow_id, parties.buyer),
            "REJECTED": lambda: EscrowService.reject(
                escrow_id, parties.buyer, RejectPayload.from_dict({"reason": "Lens is cracked and scratched"})),
            "RETURN_SHIPPED": lambda: EscrowService.return_ship(
                escrow_id, parties.buyer,
                ReturnShipPayload.from_dict({"trackingInfo": "RETURN-42"})),
        }
        if target == "DISPUTED":
            _advance(escrow_id, "SHIPPED")
            return EscrowService.dispute(
                escrow_id, parties.buyer, DisputePayload.from_dict({"reason": "Item never arrived at my door"}))

        current = EscrowService.get_by_id(escrow_id)
        for status in _PATH[_PATH.index(current["status"]) + 1:_PATH.index(target) + 1]:
            current = steps[status]()
        return current

    return _advance
