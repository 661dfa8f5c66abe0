"""
Escrow State Machine Service
============================

Owns the escrow aggregate and every legal transition on it. Each operation:

1. opens one database transaction and row-locks the escrow,
2. checks the status precondition (InvalidStateError), then the caller's role
   (ForbiddenError), then business rules,
3. applies field changes, ledger movements (via EscrowFundManager), exactly one
   history entry (two for the "both agreed" event), an audit row and any
   notification rows,
4. commits all of it as one unit and returns the serialized escrow.

A failed precondition leaves no trace: no field write, no history, no balance
change. The version column turns a lost race into InvalidStateError.
"""

import logging
import secrets
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models import (
    DEPOSIT_MONITOR_ACTOR, SYSTEM_ACTOR, DepositWatch, DepositWatchStatus, Escrow,
    EscrowHistory, EscrowStatus, User,
)
from services.audit_logger import AuditAction, audit_logger
from services.custody_address_service import get_custody_service
from services.derivation_index_allocator import get_derivation_index_allocator
from services.escrow_fund_manager import EscrowFundManager
from services.notification_queue import EmailTemplate, NotificationQueueService
from utils.atomic_transactions import atomic_transaction, lock_escrow
from utils.datetime_helpers import days_from_now, ensure_naive_datetime, get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.escrow_errors import (
    AlreadyAgreedError, DerivationIndexCollisionError, ForbiddenError, NotFoundError, ValidationError,
    InvalidStateError,
)
from utils.escrow_payloads import (
    CreateEscrowPayload, DisputePayload, RejectPayload, ResolvePayload, ReturnShipPayload, ShipPayload,
)
from utils.escrow_state_validator import EscrowStateValidator

logger = logging.getLogger(__name__)

BUYER = "buyer"
SELLER = "seller"


class HistoryAction:
    """History action names (wire contract)"""
    CREATED = "CREATED"
    BUYER_AGREED = "BUYER_AGREED"
    SELLER_AGREED = "SELLER_AGREED"
    BOTH_AGREED = "BOTH_AGREED"
    FUNDED = "FUNDED"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    SHIPPED = "SHIPPED"
    RECEIVED = "RECEIVED"
    ACCEPTED = "ACCEPTED"
    AUTO_ACCEPTED = "AUTO_ACCEPTED"
    REJECTED = "REJECTED"
    RETURN_SHIPPED = "RETURN_SHIPPED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    EXPIRED = "EXPIRED"


def _simulated_tx_hash() -> str:
    """64-hex placeholder for settlement legs that are not broadcast"""
    return secrets.token_hex(32)


def _load_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found", {"userId": user_id})
    return user


@contextmanager
def _escrow_transaction(escrow_id: str, user_id: Optional[int] = None) -> Generator[Tuple[Session, Escrow, Optional[User]], None, None]:
    """One transaction with the escrow row-locked and the acting user loaded"""
    with atomic_transaction() as session:
        escrow = lock_escrow(escrow_id, session)
        user = _load_user(session, user_id) if user_id is not None else None
        yield session, escrow, user


class EscrowService:
    """Escrow lifecycle transitions"""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def role_of(escrow: Escrow, user: User) -> Optional[str]:
        if user.id == escrow.buyer_id:
            return BUYER
        if user.id == escrow.seller_id:
            return SELLER
        return None

    @classmethod
    def _require_role(cls, escrow: Escrow, user: User, operation: str, *roles: str) -> str:
        role = cls.role_of(escrow, user)
        if role not in roles:
            logger.warning(f"🚫 FORBIDDEN: user {user.id} ({role or 'outsider'}) cannot {operation} escrow {escrow.escrow_id}")
            raise ForbiddenError(
                f"Only the {' or '.join(roles)} can {operation.replace('_', ' ')} this escrow",
                {"escrowId": escrow.escrow_id, "requiredRole": list(roles)},
            )
        return role

    @staticmethod
    def _append_history(
        escrow: Escrow, action: str, actor: str, details: Optional[str] = None, at: Optional[datetime] = None,
    ) -> EscrowHistory:
        entry = EscrowHistory(
            sequence=len(escrow.history) + 1,
            action=action,
            actor=actor,
            details=details,
            created_at=at or get_naive_utc_now(),
        )
        escrow.history.append(entry)
        return entry

    @staticmethod
    def _audit(
        session: Session, escrow: Escrow, action: str, actor: str, previous_status: str,
        user_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None,
    ) -> None:
        audit_logger.record(
            session,
            action=action,
            escrow_id=escrow.escrow_id,
            actor=actor,
            user_id=user_id,
            previous_status=previous_status,
            new_status=escrow.status,
            details=details,
        )

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    @classmethod
    def create_escrow(cls, buyer_id: int, payload: CreateEscrowPayload) -> Dict[str, Any]:
        """Create an escrow in AWAITING_AGREEMENT with a freshly derived custody address"""
        allocator = get_derivation_index_allocator()
        custody = get_custody_service()

        with allocator.serialized():
            with atomic_transaction() as session:
                buyer = _load_user(session, buyer_id)
                seller = session.execute(
                    select(User).where(User.username == payload.seller_username)
                ).scalar_one_or_none()
                if seller is None:
                    raise NotFoundError(f"Seller '{payload.seller_username}' not found", {"sellerUsername": payload.seller_username})
                if seller.id == buyer.id:
                    raise ValidationError("You cannot create an escrow with yourself", {"field": "sellerUsername"})

                derivation_index = allocator.next_index(session)
                bundle = custody.generate(derivation_index)
                now = get_naive_utc_now()

                escrow = Escrow(
                    escrow_id=f"esc_{uuid.uuid4().hex[:12]}",
                    title=payload.title,
                    description=payload.description,
                    category=payload.category,
                    amount=payload.amount,
                    amount_satoshis=MonetaryDecimal.to_satoshis(payload.amount),
                    inspection_days=payload.inspection_days,
                    buyer_id=buyer.id,
                    seller_id=seller.id,
                    buyer_username=buyer.username,
                    seller_username=seller.username,
                    arbiter=SYSTEM_ACTOR,
                    escrow_address=bundle.escrow_address,
                    buyer_pubkey=bundle.buyer_pubkey,
                    seller_pubkey=bundle.seller_pubkey,
                    platform_pubkey=bundle.platform_pubkey,
                    redeem_script=bundle.redeem_script,
                    derivation_index=bundle.derivation_index,
                    confirmations=0,
                    platform_fee=0,
                    status=EscrowStatus.AWAITING_AGREEMENT.value,
                    buyer_agreed=False,
                    seller_agreed=False,
                    created_at=now,
                    expires_at=days_from_now(payload.expires_in_days, now),
                    history=[],
                )
                session.add(escrow)
                cls._append_history(escrow, HistoryAction.CREATED, buyer.username, at=now)

                try:
                    session.flush()
                except IntegrityError as e:
                    if "derivation_index" in str(e.orig):
                        logger.critical(f"🚨 DERIVATION_INDEX_COLLISION: index {derivation_index} already allocated")
                        raise DerivationIndexCollisionError(
                            f"Derivation index {derivation_index} was allocated twice"
                        ) from e
                    raise

                audit_logger.record(
                    session,
                    action=AuditAction.CREATE,
                    escrow_id=escrow.escrow_id,
                    actor=buyer.username,
                    user_id=buyer.id,
                    new_status=escrow.status,
                    details={
                        "amount": format(escrow.amount, "f"),
                        "seller": seller.username,
                        "derivationIndex": derivation_index,
                        "simulated": bundle.is_simulated,
                    },
                )
                NotificationQueueService.enqueue_for_parties(
                    session, escrow, EmailTemplate.ESCROW_CREATED,
                    f"New escrow from {buyer.username}: {escrow.title}", "created", [seller],
                )

                logger.info(
                    f"✅ ESCROW_CREATED: {escrow.escrow_id} - {escrow.amount} BTC "
                    f"{buyer.username} → {seller.username} (index {derivation_index})"
                )
                return escrow.to_dict()

    @classmethod
    def get_by_id(cls, escrow_id: str) -> Dict[str, Any]:
        with atomic_transaction() as session:
            escrow = session.execute(
                select(Escrow).where(Escrow.escrow_id == escrow_id).options(selectinload(Escrow.history))
            ).scalar_one_or_none()
            if escrow is None:
                raise NotFoundError(f"Escrow {escrow_id} not found", {"escrowId": escrow_id})
            return escrow.to_dict()

    @classmethod
    def list_for_user(cls, user_id: int, role: Optional[str] = None) -> List[Dict[str, Any]]:
        """Escrows where the user is buyer and/or seller, newest first"""
        if role not in (None, BUYER, SELLER):
            raise ValidationError("role must be 'buyer' or 'seller'", {"field": "role"})

        with atomic_transaction() as session:
            _load_user(session, user_id)
            if role == BUYER:
                condition = Escrow.buyer_id == user_id
            elif role == SELLER:
                condition = Escrow.seller_id == user_id
            else:
                condition = or_(Escrow.buyer_id == user_id, Escrow.seller_id == user_id)
            escrows = session.execute(
                select(Escrow).where(condition).options(selectinload(Escrow.history)).order_by(Escrow.created_at.desc())
            ).scalars().all()
            return [escrow.to_dict() for escrow in escrows]

    # ------------------------------------------------------------------
    # Agreement and funding
    # ------------------------------------------------------------------

    @classmethod
    def agree(cls, escrow_id: str, user_id: int) -> Dict[str, Any]:
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            EscrowStateValidator.require_operation("agree", escrow.status, escrow_id)
            role = cls._require_role(escrow, user, "agree to", BUYER, SELLER)

            if role == BUYER:
                if escrow.buyer_agreed:
                    raise AlreadyAgreedError("Buyer has already agreed to this escrow", {"escrowId": escrow_id})
                escrow.buyer_agreed = True
                cls._append_history(escrow, HistoryAction.BUYER_AGREED, user.username)
            else:
                if escrow.seller_agreed:
                    raise AlreadyAgreedError("Seller has already agreed to this escrow", {"escrowId": escrow_id})
                escrow.seller_agreed = True
                cls._append_history(escrow, HistoryAction.SELLER_AGREED, user.username)

            if escrow.buyer_agreed and escrow.seller_agreed:
                escrow.status = EscrowStatus.CREATED.value
                cls._append_history(escrow, HistoryAction.BOTH_AGREED, SYSTEM_ACTOR, "Both parties agreed to the terms")
                logger.info(f"🤝 ESCROW_AGREED: {escrow_id} - both parties agreed, awaiting funding")

            cls._audit(session, escrow, AuditAction.AGREE, user.username, previous, user.id, {"role": role})
            return escrow.to_dict()

    @classmethod
    def fund(cls, escrow_id: str, user_id: int) -> Dict[str, Any]:
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("fund", escrow.status, escrow_id)
            cls._require_role(escrow, user, "fund", BUYER)

            EscrowFundManager.debit_for_funding(session, escrow)

            now = get_naive_utc_now()
            escrow.status = target.value
            escrow.funded_at = now
            escrow.tx_hash = _simulated_tx_hash()
            session.add(DepositWatch(
                escrow_id=escrow.escrow_id,
                address=escrow.escrow_address,
                expected_satoshis=escrow.amount_satoshis,
                status=DepositWatchStatus.WATCHING.value,
                is_simulated=escrow.redeem_script is None,
                confirmations=0,
                created_at=now,
            ))
            cls._append_history(escrow, HistoryAction.FUNDED, user.username, at=now)
            cls._audit(session, escrow, AuditAction.FUND, user.username, previous, user.id,
                       {"amount": format(escrow.amount, "f"), "txHash": escrow.tx_hash})
            NotificationQueueService.enqueue_for_parties(
                session, escrow, EmailTemplate.ESCROW_FUNDED,
                f"Escrow funded: {escrow.title}", "funded", [escrow.seller],
            )

            logger.info(f"✅ ESCROW_FUNDED: {escrow_id} - {escrow.amount} BTC locked at {escrow.escrow_address}")
            return escrow.to_dict()

    @classmethod
    def apply_deposit_confirmation(
        cls, session: Session, escrow: Escrow, tx_hash: Optional[str], confirmations: int,
    ) -> bool:
        """
        Record an on-chain deposit observed by the deposit monitor.

        Back-fills confirmations and txHash on any status. Only an escrow still
        in CREATED is moved to FUNDED; no wallet balance moves here because the
        funds arrived on-chain. Returns True when a transition happened.
        """
        escrow.confirmations = max(int(confirmations), escrow.confirmations or 0)
        if tx_hash:
            escrow.tx_hash = tx_hash

        if escrow.status != EscrowStatus.CREATED.value:
            logger.info(
                f"📝 DEPOSIT_BACKFILLED: {escrow.escrow_id} ({escrow.status}) - "
                f"{confirmations} confirmations, tx {tx_hash}"
            )
            return False

        previous = escrow.status
        target = EscrowStateValidator.require_operation("confirm_deposit", escrow.status, escrow.escrow_id)
        escrow.status = target.value
        escrow.funded_at = get_naive_utc_now()
        cls._append_history(
            escrow, HistoryAction.DEPOSIT_CONFIRMED, DEPOSIT_MONITOR_ACTOR,
            f"Confirmed on-chain ({confirmations} confirmations)",
        )
        cls._audit(session, escrow, AuditAction.DEPOSIT_CONFIRMED, DEPOSIT_MONITOR_ACTOR, previous,
                   details={"txHash": tx_hash, "confirmations": confirmations})
        logger.info(f"✅ ESCROW_FUNDED_ONCHAIN: {escrow.escrow_id} - {confirmations} confirmations")
        return True

    # ------------------------------------------------------------------
    # Shipping and inspection
    # ------------------------------------------------------------------

    @classmethod
    def ship(cls, escrow_id: str, user_id: int, payload: ShipPayload) -> Dict[str, Any]:
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("ship", escrow.status, escrow_id)
            cls._require_role(escrow, user, "ship", SELLER)

            escrow.status = target.value
            escrow.tracking_info = payload.tracking_info
            escrow.shipped_at = get_naive_utc_now()
            cls._append_history(escrow, HistoryAction.SHIPPED, user.username, payload.notes)
            cls._audit(session, escrow, AuditAction.SHIP, user.username, previous, user.id,
                       {"trackingInfo": payload.tracking_info})
            NotificationQueueService.enqueue_for_parties(
                session, escrow, EmailTemplate.ESCROW_SHIPPED,
                f"Your order has shipped: {escrow.title}", "shipped", [escrow.buyer],
                {"trackingInfo": payload.tracking_info},
            )

            logger.info(f"📦 ESCROW_SHIPPED: {escrow_id} by {user.username}")
            return escrow.to_dict()

    @classmethod
    def receive(cls, escrow_id: str, user_id: int) -> Dict[str, Any]:
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("receive", escrow.status, escrow_id)
            cls._require_role(escrow, user, "confirm receipt of", BUYER)

            now = get_naive_utc_now()
            escrow.status = target.value
            escrow.received_at = now
            escrow.inspection_deadline = days_from_now(escrow.inspection_days, now)
            cls._append_history(
                escrow, HistoryAction.RECEIVED, user.username,
                f"Inspection period: {escrow.inspection_days} day(s)", at=now,
            )
            cls._audit(session, escrow, AuditAction.RECEIVE, user.username, previous, user.id,
                       {"inspectionDeadline": escrow.inspection_deadline.isoformat()})

            logger.info(f"🔍 ESCROW_INSPECTION: {escrow_id} until {escrow.inspection_deadline.isoformat()}")
            return escrow.to_dict()

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    @classmethod
    def _release(
        cls, session: Session, escrow: Escrow, previous: str, actor: str, user_id: Optional[int],
        history_action: str, audit_action: str, details: Optional[str] = None,
    ) -> None:
        plan = EscrowFundManager.settle_release(session, escrow)
        now = get_naive_utc_now()
        escrow.status = EscrowStatus.RELEASED.value
        escrow.released_at = now
        escrow.inspection_deadline = None
        escrow.release_tx_hash = _simulated_tx_hash()
        cls._append_history(escrow, history_action, actor, details, at=now)
        cls._audit(session, escrow, audit_action, actor, previous, user_id, {
            "sellerCredit": format(plan.seller_credit, "f"),
            "fee": format(plan.fee, "f"),
        })
        NotificationQueueService.enqueue_for_parties(
            session, escrow, EmailTemplate.ESCROW_ACCEPTED,
            f"Escrow released: {escrow.title}", "released", [escrow.buyer, escrow.seller],
            {"sellerCredit": format(plan.seller_credit, "f"), "fee": format(plan.fee, "f")},
        )

    @classmethod
    def accept(cls, escrow_id: str, user_id: int) -> Dict[str, Any]:
        """
        Buyer accepts the goods: seller is paid net of the escrow fee.

        Also accepted from the legacy DELIVERED status written by older clients.
        """
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            EscrowStateValidator.require_operation("accept", escrow.status, escrow_id)
            cls._require_role(escrow, user, "accept", BUYER)

            if previous == EscrowStatus.DELIVERED.value:
                logger.warning(f"⚠️ LEGACY_DELIVERED_ACCEPT: {escrow_id} accepted from deprecated DELIVERED status")

            cls._release(session, escrow, previous, user.username, user.id, HistoryAction.ACCEPTED, AuditAction.ACCEPT)
            logger.info(f"✅ ESCROW_RELEASED: {escrow_id} accepted by {user.username}")
            return escrow.to_dict()

    @classmethod
    def auto_accept(cls, escrow_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Scheduler-only: accept on the buyer's behalf once the inspection deadline passed"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        with _escrow_transaction(escrow_id) as (session, escrow, _):
            previous = escrow.status
            EscrowStateValidator.require_operation("auto_accept", escrow.status, escrow_id)
            if escrow.inspection_deadline is None or escrow.inspection_deadline >= now:
                raise InvalidStateError(
                    f"Inspection period for escrow {escrow_id} has not ended",
                    {"escrowId": escrow_id, "inspectionDeadline": escrow.inspection_deadline and escrow.inspection_deadline.isoformat()},
                )

            cls._release(
                session, escrow, previous, SYSTEM_ACTOR, None,
                HistoryAction.AUTO_ACCEPTED, AuditAction.AUTO_ACCEPT,
                "Inspection period expired without rejection",
            )
            logger.info(f"⏰ ESCROW_AUTO_ACCEPTED: {escrow_id}")
            return escrow.to_dict()

    @classmethod
    def reject(cls, escrow_id: str, user_id: int, payload: RejectPayload) -> Dict[str, Any]:
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("reject", escrow.status, escrow_id)
            cls._require_role(escrow, user, "reject", BUYER)

            escrow.status = target.value
            escrow.rejection_reason = payload.reason
            escrow.inspection_deadline = None
            cls._append_history(escrow, HistoryAction.REJECTED, user.username, payload.reason)
            cls._audit(session, escrow, AuditAction.REJECT, user.username, previous, user.id, {"reason": payload.reason})
            NotificationQueueService.enqueue_for_parties(
                session, escrow, EmailTemplate.ESCROW_REJECTED,
                f"Item rejected: {escrow.title}", "rejected", [escrow.seller], {"reason": payload.reason},
            )

            logger.info(f"↩️ ESCROW_REJECTED: {escrow_id} by {user.username}")
            return escrow.to_dict()

    @classmethod
    def return_ship(cls, escrow_id: str, user_id: int, payload: ReturnShipPayload) -> Dict[str, Any]:
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("return_ship", escrow.status, escrow_id)
            cls._require_role(escrow, user, "return ship", BUYER)

            escrow.status = target.value
            escrow.return_tracking_info = payload.tracking_info
            cls._append_history(escrow, HistoryAction.RETURN_SHIPPED, user.username)
            cls._audit(session, escrow, AuditAction.RETURN_SHIP, user.username, previous, user.id,
                       {"trackingInfo": payload.tracking_info})

            logger.info(f"📦 ESCROW_RETURN_SHIPPED: {escrow_id}")
            return escrow.to_dict()

    @classmethod
    def refund(cls, escrow_id: str, user_id: int) -> Dict[str, Any]:
        """Seller confirms the return: buyer is refunded in full, no fee"""
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("refund", escrow.status, escrow_id)
            cls._require_role(escrow, user, "refund", SELLER)

            EscrowFundManager.settle_refund(session, escrow)
            now = get_naive_utc_now()
            escrow.status = target.value
            escrow.refunded_at = now
            escrow.release_tx_hash = _simulated_tx_hash()
            cls._append_history(escrow, HistoryAction.REFUNDED, user.username, at=now)
            cls._audit(session, escrow, AuditAction.REFUND, user.username, previous, user.id,
                       {"buyerCredit": format(escrow.amount, "f")})
            NotificationQueueService.enqueue_for_parties(
                session, escrow, EmailTemplate.ESCROW_REFUNDED,
                f"Escrow refunded: {escrow.title}", "refunded", [escrow.buyer],
            )

            logger.info(f"💸 ESCROW_REFUNDED: {escrow_id} - {escrow.amount} BTC back to {escrow.buyer_username}")
            return escrow.to_dict()

    @classmethod
    def expire(cls, escrow_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Scheduler-only: refund a FUNDED escrow whose expiry has passed"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        with _escrow_transaction(escrow_id) as (session, escrow, _):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("expire", escrow.status, escrow_id)
            if escrow.expires_at >= now:
                raise InvalidStateError(
                    f"Escrow {escrow_id} has not expired yet",
                    {"escrowId": escrow_id, "expiresAt": escrow.expires_at.isoformat()},
                )

            EscrowFundManager.settle_refund(session, escrow, reason="expired")
            escrow.status = target.value
            escrow.refunded_at = now
            escrow.release_tx_hash = _simulated_tx_hash()
            cls._append_history(escrow, HistoryAction.EXPIRED, SYSTEM_ACTOR, "Escrow expired; funds refunded to buyer")
            cls._audit(session, escrow, AuditAction.EXPIRE, SYSTEM_ACTOR, previous,
                       details={"buyerCredit": format(escrow.amount, "f")})
            NotificationQueueService.enqueue_for_parties(
                session, escrow, EmailTemplate.ESCROW_EXPIRED,
                f"Escrow expired: {escrow.title}", "expired", [escrow.buyer, escrow.seller],
            )

            logger.info(f"⌛ ESCROW_EXPIRED: {escrow_id} - {escrow.amount} BTC refunded to {escrow.buyer_username}")
            return escrow.to_dict()

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    @classmethod
    def dispute(cls, escrow_id: str, user_id: int, payload: DisputePayload) -> Dict[str, Any]:
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("dispute", escrow.status, escrow_id)
            role = cls._require_role(escrow, user, "dispute", BUYER, SELLER)

            now = get_naive_utc_now()
            escrow.status = target.value
            escrow.dispute_reason = payload.reason
            escrow.dispute_evidence = payload.evidence
            escrow.dispute_opened_by = user.username
            escrow.dispute_opened_at = now
            escrow.inspection_deadline = None
            cls._append_history(escrow, HistoryAction.DISPUTED, user.username, payload.reason, at=now)
            cls._audit(session, escrow, AuditAction.DISPUTE, user.username, previous, user.id,
                       {"role": role, "reason": payload.reason})
            counterparty = escrow.seller if role == BUYER else escrow.buyer
            NotificationQueueService.enqueue_for_parties(
                session, escrow, EmailTemplate.ESCROW_DISPUTED,
                f"Dispute opened: {escrow.title}", "disputed", [counterparty], {"reason": payload.reason},
            )

            logger.warning(f"⚠️ ESCROW_DISPUTED: {escrow_id} by {user.username} ({role}) from {previous}")
            return escrow.to_dict()

    @classmethod
    def resolve(cls, escrow_id: str, user_id: int, payload: ResolvePayload) -> Dict[str, Any]:
        """Arbiter ruling: split the escrow per ruling, dispute fee on the ruled share"""
        with _escrow_transaction(escrow_id, user_id) as (session, escrow, user):
            previous = escrow.status
            target = EscrowStateValidator.require_operation("resolve", escrow.status, escrow_id)
            if not user.is_admin:
                logger.warning(f"🚫 FORBIDDEN: user {user.id} attempted to resolve dispute on {escrow_id}")
                raise ForbiddenError("Only an arbiter can resolve disputes", {"escrowId": escrow_id})

            plan = EscrowFundManager.settle_resolution(session, escrow, payload.ruling, payload.split_percentage)
            now = get_naive_utc_now()
            escrow.status = target.value
            escrow.resolution_ruling = payload.ruling
            escrow.resolution_split_percentage = payload.split_percentage
            escrow.resolution_notes = payload.notes
            escrow.resolved_by = user.username
            escrow.resolved_at = now
            escrow.release_tx_hash = _simulated_tx_hash()
            cls._append_history(
                escrow, HistoryAction.RESOLVED, user.username,
                f"Ruling: {payload.ruling} ({payload.split_percentage}%)", at=now,
            )
            cls._audit(session, escrow, AuditAction.RESOLVE_DISPUTE, user.username, previous, user.id, {
                "ruling": payload.ruling,
                "splitPercentage": payload.split_percentage,
                "buyerCredit": format(plan.buyer_credit, "f"),
                "sellerCredit": format(plan.seller_credit, "f"),
                "fee": format(plan.fee, "f"),
            })
            NotificationQueueService.enqueue_for_parties(
                session, escrow, EmailTemplate.ESCROW_RESOLVED,
                f"Dispute resolved: {escrow.title}", "resolved", [escrow.buyer, escrow.seller],
                {"ruling": payload.ruling, "splitPercentage": payload.split_percentage},
            )

            logger.info(
                f"⚖️ DISPUTE_RESOLVED: {escrow_id} - {payload.ruling} {payload.split_percentage}% "
                f"by {user.username} (fee {plan.fee} BTC)"
            )
            return escrow.to_dict()
