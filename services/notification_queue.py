"""
Notification Queue Service

The engine never sends mail itself. Transitions insert NotificationQueue rows
in their own transaction (so a rolled-back transition leaves no email behind)
and a separate sender drains the queue. Idempotency keys make re-enqueueing the
same event a no-op.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models import Escrow, NotificationQueue, NotificationStatus, User
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class EmailTemplate:
    """Template names understood by the email sender"""
    ESCROW_CREATED = "escrowCreated"
    ESCROW_FUNDED = "escrowFunded"
    ESCROW_SHIPPED = "escrowShipped"
    ESCROW_ACCEPTED = "escrowAccepted"
    ESCROW_REJECTED = "escrowRejected"
    ESCROW_REFUNDED = "escrowRefunded"
    ESCROW_DISPUTED = "escrowDisputed"
    ESCROW_RESOLVED = "escrowResolved"
    ESCROW_EXPIRED = "escrowExpired"


class NotificationQueueService:
    """Transactional outbox for escrow emails"""

    @classmethod
    def enqueue(
        cls,
        session: Session,
        user: User,
        template_name: str,
        subject: str,
        template_data: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[NotificationQueue]:
        """Queue one email for `user`; returns None when skipped"""
        if not user.email:
            logger.debug(f"📭 NOTIFICATION_SKIPPED: user {user.id} has no email ({template_name})")
            return None

        if idempotency_key:
            existing = session.execute(
                select(NotificationQueue.id).where(NotificationQueue.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            if existing is not None:
                logger.debug(f"🔁 NOTIFICATION_DUPLICATE: {idempotency_key} already queued")
                return None

        entry = NotificationQueue(
            user_id=user.id,
            channel="email",
            recipient=user.email,
            subject=subject,
            template_name=template_name,
            template_data=template_data or {},
            status=NotificationStatus.PENDING.value,
            idempotency_key=idempotency_key,
            created_at=get_naive_utc_now(),
        )
        session.add(entry)
        logger.debug(f"📧 NOTIFICATION_QUEUED: {template_name} → user {user.id}")
        return entry

    @classmethod
    def enqueue_for_parties(
        cls,
        session: Session,
        escrow: Escrow,
        template_name: str,
        subject: str,
        event_key: str,
        recipients: Iterable[User],
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Queue the same escrow email for each recipient; returns how many were queued"""
        data = {
            "escrowId": escrow.escrow_id,
            "title": escrow.title,
            "amount": format(escrow.amount, "f"),
            "status": escrow.status,
        }
        if extra_data:
            data.update(extra_data)

        queued = 0
        for user in recipients:
            key = f"escrow_{escrow.escrow_id}_{event_key}_{user.id}"
            if cls.enqueue(session, user, template_name, subject, data, key) is not None:
                queued += 1
        return queued

    @classmethod
    def purge_processed(cls, session: Session, retention_days: int) -> int:
        """Delete sent/failed entries older than `retention_days`; pending rows are kept"""
        cutoff = get_naive_utc_now() - timedelta(days=retention_days)
        result = session.execute(
            delete(NotificationQueue).where(
                NotificationQueue.status.in_([NotificationStatus.SENT.value, NotificationStatus.FAILED.value]),
                NotificationQueue.created_at < cutoff,
            )
        )
        purged = result.rowcount or 0
        if purged:
            logger.info(f"🧹 NOTIFICATIONS_PURGED: {purged} entries older than {retention_days}d")
        return purged
