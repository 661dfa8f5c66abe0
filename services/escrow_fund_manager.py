"""
Escrow Fund Manager
Applies fee plans to the ledger: wallet debits/credits, platform fee records
and wallet transaction rows. Always runs inside the caller's transaction so the
balance movement commits together with the status change that triggers it.
Never initiates transitions itself.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import Escrow, PlatformRevenue, Transaction, TransactionType
from utils.atomic_transactions import credit_wallet, debit_wallet
from utils.datetime_helpers import get_naive_utc_now
from utils.fee_calculator import FeeCalculator, PayoutPlan

logger = logging.getLogger(__name__)


class EscrowFundManager:
    """Ledger application for escrow funding and settlement"""

    @classmethod
    def _record_transaction(
        cls,
        session: Session,
        user_id: int,
        escrow: Escrow,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str,
    ) -> Transaction:
        entry = Transaction(
            transaction_id=str(uuid.uuid4()),
            user_id=user_id,
            escrow_id=escrow.escrow_id,
            transaction_type=transaction_type.value,
            amount=amount,
            currency="BTC",
            description=description,
            created_at=get_naive_utc_now(),
        )
        session.add(entry)
        return entry

    @classmethod
    def debit_for_funding(cls, session: Session, escrow: Escrow) -> Decimal:
        """Move `amount` from the buyer's wallet into escrow"""
        amount = Decimal(escrow.amount)
        debit_wallet(session, escrow.buyer_id, amount)
        cls._record_transaction(
            session, escrow.buyer_id, escrow, TransactionType.ESCROW_PAYMENT, -amount,
            f"Escrow funded: {escrow.title}",
        )
        logger.info(f"🔒 ESCROW_FUNDS_LOCKED: {escrow.escrow_id} - {amount} BTC from user {escrow.buyer_id}")
        return amount

    @classmethod
    def apply_payout(
        cls,
        session: Session,
        escrow: Escrow,
        plan: PayoutPlan,
        buyer_transaction_type: TransactionType,
        seller_transaction_type: TransactionType,
        description: str,
    ) -> PayoutPlan:
        """Credit both parties per plan and record the platform fee"""
        if plan.total != Decimal(escrow.amount):
            raise ValueError(
                f"Payout plan for {escrow.escrow_id} does not conserve funds: "
                f"{plan.total} != {escrow.amount}"
            )

        if plan.buyer_credit > 0:
            credit_wallet(session, escrow.buyer_id, plan.buyer_credit)
            cls._record_transaction(session, escrow.buyer_id, escrow, buyer_transaction_type, plan.buyer_credit, description)

        if plan.seller_credit > 0:
            credit_wallet(session, escrow.seller_id, plan.seller_credit)
            cls._record_transaction(session, escrow.seller_id, escrow, seller_transaction_type, plan.seller_credit, description)

        if plan.fee > 0:
            session.add(PlatformRevenue(
                escrow_id=escrow.escrow_id,
                fee_type=plan.fee_type,
                fee_amount=plan.fee,
                fee_currency="BTC",
                collected_at=get_naive_utc_now(),
            ))
            escrow.platform_fee = Decimal(escrow.platform_fee or 0) + plan.fee
            logger.info(f"💰 PLATFORM_FEE_RECORDED: {escrow.escrow_id} - {plan.fee} BTC ({plan.fee_type})")

        logger.info(
            f"✅ ESCROW_SETTLED: {escrow.escrow_id} - buyer +{plan.buyer_credit}, "
            f"seller +{plan.seller_credit}, fee {plan.fee} BTC"
        )
        return plan

    @classmethod
    def settle_release(cls, session: Session, escrow: Escrow) -> PayoutPlan:
        """Acceptance path: seller receives amount minus the escrow fee"""
        plan = FeeCalculator.plan_release(escrow.amount)
        return cls.apply_payout(
            session, escrow, plan,
            TransactionType.ESCROW_RELEASE, TransactionType.ESCROW_RELEASE,
            f"Escrow released: {escrow.title}",
        )

    @classmethod
    def settle_refund(cls, session: Session, escrow: Escrow, reason: str = "refunded") -> PayoutPlan:
        """Return/refund/expiry path: buyer receives the full amount"""
        plan = FeeCalculator.plan_refund(escrow.amount)
        return cls.apply_payout(
            session, escrow, plan,
            TransactionType.ESCROW_REFUND, TransactionType.ESCROW_REFUND,
            f"Escrow {reason}: {escrow.title}",
        )

    @classmethod
    def settle_resolution(cls, session: Session, escrow: Escrow, ruling: str, split_percentage: int) -> PayoutPlan:
        """Arbitrated path: ruled party receives its share minus the dispute fee"""
        plan = FeeCalculator.plan_resolution(escrow.amount, ruling, split_percentage)
        return cls.apply_payout(
            session, escrow, plan,
            TransactionType.DISPUTE_PAYOUT, TransactionType.DISPUTE_PAYOUT,
            f"Dispute resolved ({ruling} {split_percentage}%): {escrow.title}",
        )

    @classmethod
    def recorded_fees(cls, session: Session, escrow_id: str) -> Decimal:
        """Sum of fee ledger entries for an escrow"""
        total: Optional[Decimal] = session.execute(
            select(func.sum(PlatformRevenue.fee_amount)).where(PlatformRevenue.escrow_id == escrow_id)
        ).scalar()
        return Decimal(total or 0)
