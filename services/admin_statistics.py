"""Admin dashboard statistics, listings and user role management"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.orm import selectinload

from database import SessionLocal
from models import AuditLog, Escrow, EscrowStatus, FeeType, PlatformRevenue, User, UserRole
from services.audit_logger import AuditAction, audit_logger
from utils.atomic_transactions import atomic_transaction
from utils.escrow_errors import ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
RECENT_FEES_LIMIT = 50


def _page_bounds(page: int, limit: int) -> tuple:
    if page < 1:
        raise ValidationError("page must be at least 1", {"field": "page"})
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", {"field": "limit"})
    return (page - 1) * limit, limit


def _btc(value) -> str:
    return format(Decimal(value or 0), "f")


class AdminStatisticsService:
    """Admin dashboard views plus arbiter role management"""

    @classmethod
    def dashboard_stats(cls) -> Dict[str, Any]:
        """Escrow counts by status, volume, fees and user count"""
        session = SessionLocal()
        try:
            counts = dict(session.execute(
                select(Escrow.status, func.count(Escrow.id)).group_by(Escrow.status)
            ).all())
            by_status = {status.value: int(counts.get(status.value, 0)) for status in EscrowStatus}

            total_volume = session.execute(select(func.sum(Escrow.amount))).scalar()
            released_volume = session.execute(
                select(func.sum(Escrow.amount)).where(
                    Escrow.status.in_([EscrowStatus.RELEASED.value, EscrowStatus.RESOLVED.value])
                )
            ).scalar()
            total_fees = session.execute(select(func.sum(PlatformRevenue.fee_amount))).scalar()
            total_users = session.execute(select(func.count(User.id))).scalar() or 0

            return {
                "totalEscrows": sum(by_status.values()),
                "escrowsByStatus": by_status,
                "activeDisputes": by_status[EscrowStatus.DISPUTED.value],
                "totalVolume": _btc(total_volume),
                "settledVolume": _btc(released_volume),
                "totalFees": _btc(total_fees),
                "totalUsers": int(total_users),
            }
        finally:
            session.close()

    @classmethod
    def fee_stats(cls) -> Dict[str, Any]:
        """Totals by fee type plus the most recent fee records"""
        session = SessionLocal()
        try:
            totals = dict(session.execute(
                select(PlatformRevenue.fee_type, func.sum(PlatformRevenue.fee_amount)).group_by(PlatformRevenue.fee_type)
            ).all())
            recent = session.execute(
                select(PlatformRevenue).order_by(desc(PlatformRevenue.collected_at), desc(PlatformRevenue.id)).limit(RECENT_FEES_LIMIT)
            ).scalars().all()

            by_type = {fee_type.value: _btc(totals.get(fee_type.value)) for fee_type in FeeType}
            return {
                "totalFees": _btc(sum((Decimal(v) for v in totals.values() if v is not None), Decimal("0"))),
                "byType": by_type,
                "recent": [entry.to_dict() for entry in recent],
            }
        finally:
            session.close()

    @classmethod
    def list_disputes(cls) -> List[Dict[str, Any]]:
        session = SessionLocal()
        try:
            escrows = session.execute(
                select(Escrow)
                .where(Escrow.status == EscrowStatus.DISPUTED.value)
                .options(selectinload(Escrow.history))
                .order_by(Escrow.dispute_opened_at)
            ).scalars().all()
            return [escrow.to_dict() for escrow in escrows]
        finally:
            session.close()

    @classmethod
    def list_escrows(cls, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        offset, limit = _page_bounds(page, limit)
        if status is not None and status not in {s.value for s in EscrowStatus}:
            raise ValidationError(f"Unknown status '{status}'", {"field": "status"})

        session = SessionLocal()
        try:
            query = select(Escrow)
            count_query = select(func.count(Escrow.id))
            if status is not None:
                query = query.where(Escrow.status == status)
                count_query = count_query.where(Escrow.status == status)

            total = session.execute(count_query).scalar() or 0
            escrows = session.execute(
                query.options(selectinload(Escrow.history))
                .order_by(desc(Escrow.created_at), desc(Escrow.id))
                .offset(offset).limit(limit)
            ).scalars().all()
            return {
                "escrows": [escrow.to_dict() for escrow in escrows],
                "page": page,
                "limit": limit,
                "total": int(total),
            }
        finally:
            session.close()

    @classmethod
    def list_users(cls, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        offset, limit = _page_bounds(page, limit)
        session = SessionLocal()
        try:
            total = session.execute(select(func.count(User.id))).scalar() or 0
            users = session.execute(
                select(User).options(selectinload(User.wallet)).order_by(User.id).offset(offset).limit(limit)
            ).scalars().all()
            return {
                "users": [user.to_dict() for user in users],
                "page": page,
                "limit": limit,
                "total": int(total),
            }
        finally:
            session.close()

    @classmethod
    def audit_log(cls, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Newest audit entries first"""
        if not 1 <= limit <= 500:
            raise ValidationError("limit must be between 1 and 500", {"field": "limit"})
        if offset < 0:
            raise ValidationError("offset must not be negative", {"field": "offset"})

        session = SessionLocal()
        try:
            entries = session.execute(
                select(AuditLog).order_by(desc(AuditLog.created_at), desc(AuditLog.id)).offset(offset).limit(limit)
            ).scalars().all()
            return [entry.to_dict() for entry in entries]
        finally:
            session.close()

    @classmethod
    def update_user_role(cls, admin_user_id: int, user_id: int, role: str) -> Dict[str, Any]:
        """
        Grant or revoke a role (``admin`` carries arbiter authority for dispute resolution).

        Only an admin may change roles, and never their own. The role change
        and its CHANGE_ROLE audit row commit together.
        """
        valid_roles = {r.value for r in UserRole}
        if role not in valid_roles:
            raise ValidationError(
                f"role must be one of {', '.join(sorted(valid_roles))}", {"field": "role", "value": role}
            )

        with atomic_transaction() as session:
            admin = session.get(User, admin_user_id)
            if admin is None:
                raise NotFoundError(f"User {admin_user_id} not found", {"userId": admin_user_id})
            if not admin.is_admin:
                logger.warning(f"🚫 FORBIDDEN: user {admin_user_id} attempted to change the role of user {user_id}")
                raise ForbiddenError("Only an admin can change user roles", {"userId": user_id})
            if admin_user_id == user_id:
                raise ValidationError("Cannot change your own role", {"userId": user_id})

            user = session.execute(
                select(User).where(User.id == user_id).with_for_update()
            ).scalar_one_or_none()
            if user is None:
                raise NotFoundError(f"User {user_id} not found", {"userId": user_id})

            previous = user.role
            user.role = role
            audit_logger.record(
                session,
                AuditAction.CHANGE_ROLE,
                str(user.id),
                admin.username,
                user_id=admin.id,
                previous_status=previous,
                new_status=role,
                description=f"Role changed: {user.username} {previous} -> {role}",
                details={"from": previous, "to": role},
                entity_type="user",
            )
            session.flush()
            logger.info(f"👤 ROLE_CHANGED: {user.username} {previous} -> {role} by {admin.username}")
            return user.to_dict()
