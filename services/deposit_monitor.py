"""
Deposit Monitor
===============

Polls the chain API for every active deposit watch and confirms on-chain
funding of escrow custody addresses.

One cycle (poll_once):
- loads watching, non-simulated watches (escrows in a terminal status are only
  kept for DEPOSIT_WATCH_MAX_AGE_DAYS so their confirmations can be back-filled),
  at most DEPOSIT_POLL_BATCH_SIZE of them, least recently checked first
- fetches the chain tip once and stamps the batch as checked
- for each watch: skips addresses holding less than the expected amount,
  otherwise picks the funding transaction, computes confirmations and,
  once DEPOSIT_MIN_CONFIRMATIONS is reached, closes the watch and hands the
  escrow to EscrowService.apply_deposit_confirmation

A failure on one watch never affects the others; a chain API outage leaves
every watch in ``watching`` for the next cycle.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import or_, select, update

from config import Config
from models import DepositWatch, DepositWatchStatus, Escrow
from services.escrow_service import EscrowService
from services.mempool_service import MempoolService, confirmations_for, paid_to_address
from services.notification_queue import EmailTemplate, NotificationQueueService
from utils.atomic_transactions import atomic_transaction, lock_escrow
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_errors import ExternalUnavailableError
from utils.escrow_state_validator import EscrowStateValidator

logger = logging.getLogger(__name__)


class WatchSnapshot(NamedTuple):
    """Detached view of a watch, safe to pass between threads"""
    id: int
    escrow_id: str
    address: str
    expected_satoshis: int


def select_funding_tx(txs: List[Dict[str, Any]], address: str, expected_satoshis: int) -> Optional[Dict[str, Any]]:
    """First tx paying at least the expected amount to `address`, else the newest tx"""
    if not txs:
        return None
    for tx in txs:
        if paid_to_address(tx, address) >= expected_satoshis:
            return tx
    return txs[0]


class DepositMonitor:
    """Confirms on-chain escrow deposits"""

    def __init__(self, chain_client: Optional[MempoolService] = None,
                 min_confirmations: Optional[int] = None, batch_size: Optional[int] = None):
        self.chain_client = chain_client or MempoolService()
        self.min_confirmations = Config.DEPOSIT_MIN_CONFIRMATIONS if min_confirmations is None else min_confirmations
        self.batch_size = batch_size or Config.DEPOSIT_POLL_BATCH_SIZE

    # ------------------------------------------------------------------
    # Database side (runs in worker threads)
    # ------------------------------------------------------------------

    def _load_active_watches(self) -> List[WatchSnapshot]:
        cutoff = get_naive_utc_now() - timedelta(days=Config.DEPOSIT_WATCH_MAX_AGE_DAYS)
        terminal = [status.value for status in EscrowStateValidator.TERMINAL_STATES]
        with atomic_transaction() as session:
            rows = session.execute(
                select(DepositWatch)
                .join(Escrow, Escrow.escrow_id == DepositWatch.escrow_id)
                .where(
                    DepositWatch.status == DepositWatchStatus.WATCHING.value,
                    DepositWatch.is_simulated.is_(False),
                    or_(Escrow.status.notin_(terminal), DepositWatch.created_at >= cutoff),
                )
                .order_by(DepositWatch.last_checked_at.asc().nulls_first(), DepositWatch.id)
                .limit(self.batch_size)
            ).scalars().all()
            return [WatchSnapshot(w.id, w.escrow_id, w.address, int(w.expected_satoshis)) for w in rows]

    def _mark_checked(self, watch_ids: List[int]) -> None:
        """Stamp the batch so the next cycle starts with watches checked least recently"""
        with atomic_transaction() as session:
            session.execute(
                update(DepositWatch)
                .where(DepositWatch.id.in_(watch_ids), DepositWatch.status == DepositWatchStatus.WATCHING.value)
                .values(last_checked_at=get_naive_utc_now())
                .execution_options(synchronize_session=False)
            )

    def _record_progress(self, watch_id: int, tx_hash: Optional[str], confirmations: int) -> None:
        with atomic_transaction() as session:
            watch = session.get(DepositWatch, watch_id)
            if watch is None or watch.status != DepositWatchStatus.WATCHING.value:
                return
            watch.last_checked_at = get_naive_utc_now()
            watch.confirmations = confirmations
            if tx_hash:
                watch.detected_tx_hash = tx_hash

    def _confirm(self, watch_id: int, tx_hash: str, confirmations: int) -> Optional[bool]:
        """Close the watch and apply the deposit; None when the watch was already closed"""
        with atomic_transaction() as session:
            watch = session.get(DepositWatch, watch_id)
            if watch is None or watch.status != DepositWatchStatus.WATCHING.value:
                return None

            escrow = lock_escrow(watch.escrow_id, session)
            now = get_naive_utc_now()
            watch.status = DepositWatchStatus.CONFIRMED.value
            watch.detected_tx_hash = tx_hash
            watch.confirmations = confirmations
            watch.confirmed_at = now
            watch.last_checked_at = now

            transitioned = EscrowService.apply_deposit_confirmation(session, escrow, tx_hash, confirmations)
            if transitioned:
                NotificationQueueService.enqueue_for_parties(
                    session, escrow, EmailTemplate.ESCROW_FUNDED,
                    f"Escrow funded: {escrow.title}", "funded", [escrow.buyer, escrow.seller],
                    {"txHash": tx_hash, "confirmations": confirmations},
                )
            return transitioned

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _check_watch(self, watch: WatchSnapshot, tip_height: Optional[int]) -> str:
        balance = await self.chain_client.get_address_balance(watch.address)
        if balance["confirmed"] + balance["unconfirmed"] < watch.expected_satoshis:
            await asyncio.to_thread(self._record_progress, watch.id, None, 0)
            return "pending"

        txs = await self.chain_client.get_address_txs(watch.address)
        funding_tx = select_funding_tx(txs or [], watch.address, watch.expected_satoshis)
        if funding_tx is None:
            await asyncio.to_thread(self._record_progress, watch.id, None, 0)
            return "pending"

        tx_hash = funding_tx.get("txid")
        confirmations = confirmations_for(funding_tx, tip_height)
        if confirmations < self.min_confirmations or not tx_hash:
            await asyncio.to_thread(self._record_progress, watch.id, tx_hash, confirmations)
            logger.debug(f"⏳ DEPOSIT_PENDING: {watch.escrow_id} - {confirmations}/{self.min_confirmations} confirmations")
            return "pending"

        transitioned = await asyncio.to_thread(self._confirm, watch.id, tx_hash, confirmations)
        if transitioned is None:
            return "skipped"
        return "funded" if transitioned else "backfilled"

    async def poll_once(self) -> Dict[str, Any]:
        """Run one monitoring cycle; returns per-outcome counts"""
        summary: Dict[str, Any] = {
            "checked": 0,
            "funded": 0,
            "backfilled": 0,
            "pending": 0,
            "skipped": 0,
            "unavailable": 0,
            "errors": [],
        }

        watches = await asyncio.to_thread(self._load_active_watches)
        if not watches:
            return summary

        try:
            tip_height = await self.chain_client.get_tip_height()
        except ExternalUnavailableError as e:
            logger.warning(f"⚠️ DEPOSIT_MONITOR_CHAIN_UNAVAILABLE: {e.message} - {len(watches)} watches left untouched")
            summary["unavailable"] = len(watches)
            return summary

        await asyncio.to_thread(self._mark_checked, [watch.id for watch in watches])

        for watch in watches:
            summary["checked"] += 1
            try:
                outcome = await self._check_watch(watch, tip_height)
                summary[outcome] += 1
            except ExternalUnavailableError as e:
                logger.warning(f"⚠️ DEPOSIT_CHECK_UNAVAILABLE: {watch.escrow_id}: {e.message}")
                summary["unavailable"] += 1
            except Exception as e:
                logger.error(f"❌ DEPOSIT_CHECK_FAILED: {watch.escrow_id}: {e}", exc_info=True)
                summary["errors"].append({"escrowId": watch.escrow_id, "error": str(e)})

        if summary["funded"] or summary["backfilled"]:
            logger.info(
                f"✅ DEPOSIT_MONITOR_CYCLE: checked {summary['checked']}, funded {summary['funded']}, "
                f"backfilled {summary['backfilled']}, pending {summary['pending']}"
            )
        return summary


_deposit_monitor: Optional[DepositMonitor] = None


def get_deposit_monitor() -> DepositMonitor:
    global _deposit_monitor
    if _deposit_monitor is None:
        _deposit_monitor = DepositMonitor()
    return _deposit_monitor
