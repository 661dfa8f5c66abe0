"""
Escrow Expiry Service - scheduled deadline sweeps

Two sweeps, both driven by the scheduler:
- expiry: FUNDED escrows past expires_at are refunded to the buyer (EXPIRED)
- auto-accept: INSPECTION escrows past inspection_deadline are released to
  the seller (RELEASED, AUTO_ACCEPTED history entry)

Candidates are selected in batches, then each escrow is transitioned in its
own transaction through EscrowService, so one failure never blocks the rest
and a race with a user action simply skips the escrow.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from config import Config
from database import SessionLocal
from models import Escrow, EscrowStatus
from services.escrow_service import EscrowService
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.escrow_errors import EscrowError, InvalidStateError

logger = logging.getLogger(__name__)


class EscrowExpiryService:
    """Deadline-driven escrow transitions"""

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or Config.SWEEP_BATCH_SIZE

    def _candidate_ids(self, status: EscrowStatus, deadline_column, now: datetime) -> List[str]:
        session = SessionLocal()
        try:
            return list(session.execute(
                select(Escrow.escrow_id)
                .where(Escrow.status == status.value, deadline_column.is_not(None), deadline_column < now)
                .order_by(deadline_column)
                .limit(self.batch_size)
            ).scalars().all())
        finally:
            session.close()

    def _sweep(self, label: str, escrow_ids: List[str], transition, now: datetime) -> Dict[str, Any]:
        results: Dict[str, Any] = {"processed": 0, "escrow_ids": [], "skipped": 0, "errors": []}
        for escrow_id in escrow_ids:
            try:
                transition(escrow_id, now=now)
                results["processed"] += 1
                results["escrow_ids"].append(escrow_id)
            except InvalidStateError as e:
                # Another writer moved it first
                logger.info(f"⏭️ {label}_SKIPPED: {escrow_id} - {e.message}")
                results["skipped"] += 1
            except EscrowError as e:
                logger.error(f"❌ {label}_FAILED: {escrow_id} - {e.code}: {e.message}")
                results["errors"].append({"escrowId": escrow_id, "error": e.message})
            except Exception as e:
                logger.error(f"❌ {label}_FAILED: {escrow_id} - {e}", exc_info=True)
                results["errors"].append({"escrowId": escrow_id, "error": str(e)})
        return results

    def process_expired_escrows(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Refund FUNDED escrows whose expiry has passed"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        escrow_ids = self._candidate_ids(EscrowStatus.FUNDED, Escrow.expires_at, now)
        if escrow_ids:
            logger.info(f"🔍 EXPIRY_SWEEP: {len(escrow_ids)} funded escrows past expiry")
        results = self._sweep("EXPIRY", escrow_ids, EscrowService.expire, now)
        if results["processed"]:
            logger.info(f"⌛ EXPIRY_SWEEP_COMPLETE: {results['processed']} escrows expired and refunded")
        return results

    def process_inspection_deadlines(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Release INSPECTION escrows whose inspection period ended without rejection"""
        now = ensure_naive_datetime(now) or get_naive_utc_now()
        escrow_ids = self._candidate_ids(EscrowStatus.INSPECTION, Escrow.inspection_deadline, now)
        if escrow_ids:
            logger.info(f"🔍 AUTO_ACCEPT_SWEEP: {len(escrow_ids)} escrows past inspection deadline")
        results = self._sweep("AUTO_ACCEPT", escrow_ids, EscrowService.auto_accept, now)
        if results["processed"]:
            logger.info(f"✅ AUTO_ACCEPT_SWEEP_COMPLETE: {results['processed']} escrows released")
        return results

    async def run_sweeps(self) -> Dict[str, Any]:
        """Both sweeps off the event loop; a failing sweep does not stop the other"""
        summary: Dict[str, Any] = {}
        for name, sweep in (("expired", self.process_expired_escrows),
                            ("auto_accepted", self.process_inspection_deadlines)):
            try:
                summary[name] = await asyncio.to_thread(sweep)
            except Exception as e:
                logger.error(f"❌ ESCROW_SWEEP_ERROR ({name}): {e}", exc_info=True)
                summary[name] = {"processed": 0, "escrow_ids": [], "skipped": 0, "errors": [str(e)]}
        return summary
