"""
Wallet read service

Balances only change through escrow transitions (EscrowFundManager); this
module exposes the read side plus an admin deposit used to seed balances.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import desc, select

from database import SessionLocal
from models import Transaction, TransactionType, User, Wallet
from services.escrow_service import EscrowService
from utils.atomic_transactions import atomic_transaction, credit_wallet
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class WalletService:
    """Per-user BTC wallet views"""

    @staticmethod
    def _get_wallet(session, user_id: int) -> Wallet:
        wallet = session.execute(select(Wallet).where(Wallet.user_id == user_id)).scalar_one_or_none()
        if wallet is None:
            if session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found", {"userId": user_id})
            raise NotFoundError(f"Wallet for user {user_id} not found", {"userId": user_id})
        return wallet

    @classmethod
    def wallet_balance(cls, user_id: int) -> Dict[str, Any]:
        session = SessionLocal()
        try:
            wallet = cls._get_wallet(session, user_id)
            return {
                "userId": user_id,
                "currency": wallet.currency,
                "availableBalance": format(Decimal(wallet.available_balance), "f"),
            }
        finally:
            session.close()

    @classmethod
    def wallet_transactions(cls, user_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest movements first"""
        session = SessionLocal()
        try:
            cls._get_wallet(session, user_id)
            entries = session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(desc(Transaction.created_at), desc(Transaction.id))
                .limit(limit)
            ).scalars().all()
            return [entry.to_dict() for entry in entries]
        finally:
            session.close()

    @classmethod
    def list_user_escrows(cls, user_id: int, role: Optional[str] = None) -> List[Dict[str, Any]]:
        return EscrowService.list_for_user(user_id, role)

    @classmethod
    def ensure_wallet(cls, session, user: User) -> Wallet:
        """Create the user's wallet on first use"""
        if user.wallet is None:
            user.wallet = Wallet(currency="BTC", available_balance=Decimal("0"))
            session.flush()
            logger.info(f"👛 WALLET_CREATED: user {user.id}")
        return user.wallet

    @classmethod
    def admin_deposit(cls, user_id: int, amount: Union[str, Decimal], description: Optional[str] = None) -> Dict[str, Any]:
        """Credit a wallet outside any escrow (manual top-up)"""
        try:
            value = MonetaryDecimal.quantize_crypto(amount)
        except ValueError as e:
            raise ValidationError("amount must be a number", {"field": "amount"}) from e
        if value <= 0:
            raise ValidationError("amount must be positive", {"field": "amount"})

        with atomic_transaction() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found", {"userId": user_id})
            cls.ensure_wallet(session, user)
            credit_wallet(session, user_id, value)
            session.add(Transaction(
                transaction_id=str(uuid.uuid4()),
                user_id=user_id,
                escrow_id=None,
                transaction_type=TransactionType.DEPOSIT.value,
                amount=value,
                currency="BTC",
                description=description or "Manual wallet deposit",
                created_at=get_naive_utc_now(),
            ))
            logger.info(f"💰 WALLET_DEPOSIT: user {user_id} +{value} BTC")

        return cls.wallet_balance(user_id)
