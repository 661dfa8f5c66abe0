"""
Escrow Audit Logging

Every engine action writes one AuditLog row inside the same transaction as the
change it describes, then mirrors the entry as a JSON line on the ``audit``
logger (optionally to Config.AUDIT_LOG_FILE).
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from config import Config
from models import AuditLog
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class AuditAction:
    """Audit action names (stable; consumed by the admin audit-log view)"""
    CREATE = "CREATE"
    AGREE = "AGREE"
    FUND = "FUND"
    SHIP = "SHIP"
    RECEIVE = "RECEIVE"
    ACCEPT = "ACCEPT"
    AUTO_ACCEPT = "AUTO_ACCEPT"
    REJECT = "REJECT"
    RETURN_SHIP = "RETURN_SHIP"
    REFUND = "REFUND"
    DISPUTE = "DISPUTE"
    RESOLVE_DISPUTE = "RESOLVE_DISPUTE"
    EXPIRE = "EXPIRE"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    CHANGE_ROLE = "CHANGE_ROLE"


class AuditLogger:
    """Service for escrow audit logging"""

    def __init__(self, log_file: Optional[str] = None):
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)

        if log_file:
            audit_handler = logging.FileHandler(log_file)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
            self.audit_logger.addHandler(audit_handler)

    def record(
        self,
        session: Session,
        action: str,
        escrow_id: str,
        actor: str,
        user_id: Optional[int] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        description: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        entity_type: str = "escrow",
    ) -> AuditLog:
        """Add an audit row to the caller's transaction and mirror it to the audit log"""
        now = get_naive_utc_now()
        entry = AuditLog(
            event_type=action,
            entity_type=entity_type,
            entity_id=escrow_id,
            user_id=user_id,
            actor=actor,
            previous_state={"status": previous_status} if previous_status else None,
            new_state={"status": new_status} if new_status else None,
            description=description,
            extra_data=details or None,
            created_at=now,
        )
        session.add(entry)

        try:
            self.audit_logger.info(json.dumps({
                'timestamp': now.isoformat(),
                'action': action,
                'entity_type': entity_type,
                'entity_id': escrow_id,
                'actor': actor,
                'user_id': user_id,
                'from': previous_status,
                'to': new_status,
                'details': details or {},
            }, default=str))
        except (TypeError, ValueError) as e:
            logger.error(f"Error mirroring audit entry {action} for {escrow_id}: {e}")

        return entry


# Global audit logger instance
audit_logger = AuditLogger(Config.AUDIT_LOG_FILE)
