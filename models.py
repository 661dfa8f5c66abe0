"""
Bitcoin Escrow Engine - Database Schema
=======================================

Schema for the escrow lifecycle and custody engine:
- Users and their single BTC wallet balance
- Escrows with 2-of-3 multisig custody fields and an append-only history
- Deposit watches polled by the deposit monitor
- Append-only ledgers: platform fees, wallet movements, audit trail
- Outbound notification queue (consumed by a separate sender)

The serialized escrow layout (camelCase keys) and the status strings are the
wire contract for the HTTP layer and must remain stable.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, func, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests/simulation)
JSONType = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class EscrowStatus(Enum):
    """Escrow lifecycle states (values are the wire contract)"""
    AWAITING_AGREEMENT = "AWAITING_AGREEMENT"
    CREATED = "CREATED"
    FUNDED = "FUNDED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"  # Legacy: only accepted by accept()
    INSPECTION = "INSPECTION"
    ACCEPTED = "ACCEPTED"
    RELEASED = "RELEASED"
    REJECTED = "REJECTED"
    RETURN_SHIPPED = "RETURN_SHIPPED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    EXPIRED = "EXPIRED"


class UserRole(Enum):
    """User roles"""
    USER = "user"
    ADMIN = "admin"


class Ruling(Enum):
    """Dispute ruling - which party receives the ruled share"""
    BUYER = "BUYER"
    SELLER = "SELLER"


class DepositWatchStatus(Enum):
    """Deposit watch state machine"""
    WATCHING = "watching"
    CONFIRMED = "confirmed"


class FeeType(Enum):
    """Platform fee ledger entry types"""
    ESCROW_FEE = "escrow_fee"
    DISPUTE_FEE = "dispute_fee"


class TransactionType(Enum):
    """Wallet movement types"""
    ESCROW_PAYMENT = "escrow_payment"
    ESCROW_RELEASE = "escrow_release"
    ESCROW_REFUND = "escrow_refund"
    DISPUTE_PAYOUT = "dispute_payout"
    DEPOSIT = "deposit"


class NotificationStatus(Enum):
    """Notification queue entry status"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


SYSTEM_ACTOR = "system"
DEPOSIT_MONITOR_ACTOR = "deposit_monitor"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _btc(value: Optional[Decimal]) -> Optional[str]:
    return format(Decimal(value), "f") if value is not None else None


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Platform user (authentication handled externally)"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(10), default=UserRole.USER.value, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    # Relationships
    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet", back_populates="user", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("role IN ('user', 'admin')", name='ck_user_role_valid'),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "walletBalance": _btc(self.wallet.available_balance) if self.wallet else "0",
            "createdAt": _iso(self.created_at),
        }


class Wallet(Base):
    """Single BTC wallet balance per user"""
    __tablename__ = 'wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False, unique=True, index=True)
    currency: Mapped[str] = mapped_column(String(10), default="BTC", nullable=False)

    available_balance: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), onupdate=func.now(), nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('available_balance >= 0', name='ck_wallet_available_positive'),
    )


class Escrow(Base):
    """Escrow aggregate root: agreement, custody and lifecycle state"""
    __tablename__ = 'escrows'

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(String(16), unique=True, nullable=False, index=True)  # Public facing ID
    version = Column(Integer, nullable=False, default=1)  # Optimistic concurrency guard

    # Terms (title/description are opaque to the engine)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=True)
    amount = Column(Numeric(20, 8), nullable=False)  # Immutable after creation
    amount_satoshis = Column(BigInteger, nullable=False)
    inspection_days = Column(Integer, default=3, nullable=False)

    # Participants
    buyer_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey('users.id'), nullable=False, index=True)
    seller_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey('users.id'), nullable=False, index=True)
    buyer_username = Column(String(32), nullable=False)
    seller_username = Column(String(32), nullable=False)
    arbiter = Column(String(32), default=SYSTEM_ACTOR, nullable=False)

    # Custody (assigned once at creation, never mutated)
    escrow_address = Column(String(100), nullable=False, unique=True)
    buyer_pubkey = Column(String(66), nullable=True)
    seller_pubkey = Column(String(66), nullable=True)
    platform_pubkey = Column(String(66), nullable=True)
    redeem_script = Column(String(210), nullable=True)
    derivation_index = Column(Integer, nullable=False, unique=True)

    # Chain tracking (may be back-filled by the deposit monitor)
    confirmations = Column(Integer, default=0, nullable=False)
    tx_hash = Column(String(100), nullable=True)
    release_tx_hash = Column(String(100), nullable=True)

    # Fees actually charged (equals the sum of platform_revenue rows for this escrow)
    platform_fee = Column(Numeric(20, 8), default=Decimal("0"), nullable=False)

    # Status and agreement
    status = Column(String(20), default=EscrowStatus.AWAITING_AGREEMENT.value, nullable=False)
    buyer_agreed = Column(Boolean, default=False, nullable=False)
    seller_agreed = Column(Boolean, default=False, nullable=False)

    # Shipping and inspection
    tracking_info = Column(Text, nullable=True)
    return_tracking_info = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    inspection_deadline = Column(DateTime(timezone=False), nullable=True)

    # Dispute
    dispute_reason = Column(Text, nullable=True)
    dispute_evidence = Column(Text, nullable=True)
    dispute_opened_by = Column(String(32), nullable=True)
    dispute_opened_at = Column(DateTime(timezone=False), nullable=True)

    # Resolution
    resolution_ruling = Column(String(10), nullable=True)
    resolution_split_percentage = Column(Integer, nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(String(32), nullable=True)
    resolved_at = Column(DateTime(timezone=False), nullable=True)

    # Important timestamps
    created_at = Column(DateTime(timezone=False), nullable=False)
    expires_at = Column(DateTime(timezone=False), nullable=False)
    funded_at = Column(DateTime(timezone=False), nullable=True)
    shipped_at = Column(DateTime(timezone=False), nullable=True)
    received_at = Column(DateTime(timezone=False), nullable=True)
    released_at = Column(DateTime(timezone=False), nullable=True)
    refunded_at = Column(DateTime(timezone=False), nullable=True)

    # Relationships
    buyer = relationship("User", foreign_keys=[buyer_id])
    seller = relationship("User", foreign_keys=[seller_id])
    history = relationship(
        "EscrowHistory",
        back_populates="escrow",
        order_by="EscrowHistory.sequence",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{s.value}'" for s in EscrowStatus) + ")",
            name='ck_escrow_status_valid',
        ),
        CheckConstraint('amount > 0', name='ck_escrow_amount_positive'),
        CheckConstraint('amount_satoshis > 0', name='ck_escrow_satoshis_positive'),
        CheckConstraint('platform_fee >= 0', name='ck_escrow_fee_positive'),
        CheckConstraint('confirmations >= 0', name='ck_escrow_confirmations_positive'),
        CheckConstraint('inspection_days BETWEEN 1 AND 30', name='ck_escrow_inspection_days_range'),
        CheckConstraint('buyer_id <> seller_id', name='ck_escrow_distinct_parties'),
        Index('ix_escrows_buyer_status', 'buyer_id', 'status'),
        Index('ix_escrows_seller_status', 'seller_id', 'status'),
        Index('ix_escrows_status_created', 'status', 'created_at'),
        Index('ix_escrows_status_expires', 'status', 'expires_at'),
        Index('ix_escrows_status_inspection', 'status', 'inspection_deadline'),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the wire layout consumed by the HTTP layer"""
        dispute = None
        if self.dispute_reason is not None:
            dispute = {
                "reason": self.dispute_reason,
                "evidence": self.dispute_evidence,
                "openedBy": self.dispute_opened_by,
                "openedAt": _iso(self.dispute_opened_at),
            }
        resolution = None
        if self.resolution_ruling is not None:
            resolution = {
                "ruling": self.resolution_ruling,
                "splitPercentage": self.resolution_split_percentage,
                "notes": self.resolution_notes,
                "resolvedBy": self.resolved_by,
                "resolvedAt": _iso(self.resolved_at),
            }
        return {
            "id": self.escrow_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "amount": _btc(self.amount),
            "amountSatoshis": self.amount_satoshis,
            "status": self.status,
            "buyerId": self.buyer_id,
            "buyer": self.buyer_username,
            "sellerId": self.seller_id,
            "seller": self.seller_username,
            "arbiter": self.arbiter,
            "escrowAddress": self.escrow_address,
            "buyerPubKey": self.buyer_pubkey,
            "sellerPubKey": self.seller_pubkey,
            "platformPubKey": self.platform_pubkey,
            "redeemScript": self.redeem_script,
            "derivationIndex": self.derivation_index,
            "confirmations": self.confirmations,
            "txHash": self.tx_hash,
            "releaseTxHash": self.release_tx_hash,
            "platformFee": _btc(self.platform_fee),
            "inspectionDays": self.inspection_days,
            "inspectionDeadline": _iso(self.inspection_deadline),
            "buyerAgreed": self.buyer_agreed,
            "sellerAgreed": self.seller_agreed,
            "rejectionReason": self.rejection_reason,
            "trackingInfo": self.tracking_info,
            "returnTrackingInfo": self.return_tracking_info,
            "dispute": dispute,
            "resolution": resolution,
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
            "fundedAt": _iso(self.funded_at),
            "shippedAt": _iso(self.shipped_at),
            "receivedAt": _iso(self.received_at),
            "releasedAt": _iso(self.released_at),
            "refundedAt": _iso(self.refunded_at),
            "history": [entry.to_dict() for entry in self.history],
        }

    def __repr__(self):
        return f"<Escrow(escrow_id={self.escrow_id}, status={self.status}, amount={self.amount})>"


class EscrowHistory(Base):
    """Append-only escrow history; rows are never updated or deleted"""
    __tablename__ = 'escrow_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_pk = Column(Integer, ForeignKey('escrows.id'), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    action = Column(String(30), nullable=False)
    actor = Column(String(32), nullable=False)  # username, "system" or "deposit_monitor"
    details = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), nullable=False)

    escrow = relationship("Escrow", back_populates="history")

    __table_args__ = (
        UniqueConstraint('escrow_pk', 'sequence', name='uq_escrow_history_sequence'),
    )

    def to_dict(self) -> Dict[str, Any]:
        entry = {"action": self.action, "by": self.actor, "at": _iso(self.created_at)}
        if self.details:
            entry["details"] = self.details
        return entry


class DepositWatch(Base):
    """Active observation of an escrow's custody address by the deposit monitor"""
    __tablename__ = 'deposit_watches'

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(String(16), ForeignKey('escrows.escrow_id'), nullable=False, unique=True)
    address = Column(String(100), nullable=False, index=True)
    expected_satoshis = Column(BigInteger, nullable=False)

    # State machine
    status = Column(String(20), default=DepositWatchStatus.WATCHING.value, nullable=False, index=True)
    is_simulated = Column(Boolean, default=False, nullable=False)  # Placeholder address, never polled
    detected_tx_hash = Column(String(100), nullable=True)
    confirmations = Column(Integer, default=0, nullable=False)
    last_checked_at = Column(DateTime(timezone=False), nullable=True)
    confirmed_at = Column(DateTime(timezone=False), nullable=True)

    created_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('watching', 'confirmed')", name='ck_deposit_watch_status_valid'),
        CheckConstraint('expected_satoshis > 0', name='ck_deposit_watch_expected_positive'),
        Index('ix_deposit_watches_status_simulated', 'status', 'is_simulated'),
    )

    def __repr__(self):
        return f"<DepositWatch(escrow_id={self.escrow_id}, status={self.status}, confirmations={self.confirmations})>"


class PlatformRevenue(Base):
    """Append-only fee ledger used for revenue reporting"""
    __tablename__ = "platform_revenue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    escrow_id = Column(String(16), ForeignKey('escrows.escrow_id'), nullable=False)
    fee_type = Column(String(20), nullable=False)
    fee_amount = Column(Numeric(20, 8), nullable=False)
    fee_currency = Column(String(10), nullable=False, default="BTC")
    collected_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        CheckConstraint("fee_type IN ('escrow_fee', 'dispute_fee')", name='ck_platform_revenue_fee_type'),
        CheckConstraint('fee_amount >= 0', name='ck_platform_revenue_amount_positive'),
        Index('ix_platform_revenue_escrow', 'escrow_id'),
        Index('ix_platform_revenue_fee_type', 'fee_type'),
        Index('ix_platform_revenue_collected', 'collected_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escrowId": self.escrow_id,
            "feeType": self.fee_type,
            "amountBtc": _btc(self.fee_amount),
            "collectedAt": _iso(self.collected_at),
        }

    def __repr__(self):
        return f"<PlatformRevenue(escrow_id={self.escrow_id}, fee_amount={self.fee_amount}, fee_type={self.fee_type})>"


class Transaction(Base):
    """Wallet movement ledger (signed amounts)"""
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(36), unique=True, nullable=False, index=True)
    user_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey('users.id'), nullable=False, index=True)
    escrow_id = Column(String(16), ForeignKey('escrows.escrow_id'), nullable=True, index=True)
    transaction_type = Column(String(20), nullable=False)
    amount = Column(Numeric(20, 8), nullable=False)  # Negative for debits
    currency = Column(String(10), nullable=False, default="BTC")
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index('ix_transactions_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.transaction_id,
            "type": self.transaction_type,
            "escrowId": self.escrow_id,
            "amount": _btc(self.amount),
            "currency": self.currency,
            "description": self.description,
            "createdAt": _iso(self.created_at),
        }


class AuditLog(Base):
    """System audit trail for compliance and debugging"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Event details
    event_type = Column(String(50), nullable=False, index=True)  # FUND, RESOLVE_DISPUTE, ...
    entity_type = Column(String(50), nullable=False)  # escrow, deposit_watch
    entity_id = Column(String(50), nullable=False)

    # Actor context: user id for humans, actor name for system components
    user_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey('users.id'), nullable=True, index=True)
    actor = Column(String(32), nullable=False)

    # Change tracking
    previous_state = Column(JSONType, nullable=True)
    new_state = Column(JSONType, nullable=True)
    description = Column(Text, nullable=True)
    extra_data = Column(JSONType, nullable=True)

    created_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index('ix_audit_event_entity', 'event_type', 'entity_type'),
        Index('ix_audit_entity_id', 'entity_type', 'entity_id'),
        Index('ix_audit_created', 'created_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.event_type,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "userId": self.user_id,
            "actor": self.actor,
            "previousState": self.previous_state,
            "newState": self.new_state,
            "description": self.description,
            "details": self.extra_data,
            "createdAt": _iso(self.created_at),
        }


class NotificationQueue(Base):
    """Outbound email queue; the engine only inserts, a separate sender consumes"""
    __tablename__ = 'notification_queue'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Recipient and content
    user_id = Column(BigInteger().with_variant(Integer, "sqlite"), ForeignKey('users.id'), nullable=False, index=True)
    channel = Column(String(20), nullable=False, default="email")
    recipient = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=True)
    template_name = Column(String(100), nullable=False)
    template_data = Column(JSONType, nullable=True)

    # Status and delivery
    status = Column(String(20), default=NotificationStatus.PENDING.value, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=False), nullable=True)

    # Idempotency protection, e.g. "escrow_esc_1a2b3c4d_funded_42"
    idempotency_key = Column(String(255), nullable=True, unique=True)

    created_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index('ix_notifications_status_created', 'status', 'created_at'),
    )
