"""
Mempool.space chain observation client

Read-only access to the Esplora-style REST API used by the deposit monitor.
Every failure (network error, timeout, non-200 status, unparsable body) is
surfaced as ExternalUnavailableError so callers can leave their state
untouched and retry on the next cycle.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import Config
from utils.escrow_errors import ExternalUnavailableError

logger = logging.getLogger(__name__)


class MempoolService:
    """Minimal mempool.space client: address stats, address txs, tx, tip height"""

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: Optional[int] = None):
        self.base_url = (base_url or Config.MEMPOOL_API_BASE_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.CHAIN_API_TIMEOUT_SECONDS)

    async def _get(self, path: str, expect_json: bool = True) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"❌ MEMPOOL_API_ERROR: {response.status} on {path} - {error_text[:200]}")
                        raise ExternalUnavailableError(
                            f"Chain API returned HTTP {response.status}",
                            {"path": path, "status": response.status},
                        )
                    if expect_json:
                        return await response.json(content_type=None)
                    return await response.text()
        except aiohttp.ClientError as e:
            logger.error(f"❌ MEMPOOL_NETWORK_ERROR: {path}: {e}")
            raise ExternalUnavailableError(f"Chain API unreachable: {e}", {"path": path}) from e
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ MEMPOOL_TIMEOUT: {path} exceeded {self.timeout.total}s")
            raise ExternalUnavailableError("Chain API timed out", {"path": path}) from e
        except ValueError as e:
            logger.error(f"❌ MEMPOOL_BAD_RESPONSE: {path}: {e}")
            raise ExternalUnavailableError(f"Chain API returned an unreadable body: {e}", {"path": path}) from e

    async def get_address_balance(self, address: str) -> Dict[str, int]:
        """Confirmed/unconfirmed received totals in satoshis"""
        data = await self._get(f"/address/{address}")
        chain = data.get("chain_stats", {})
        mempool = data.get("mempool_stats", {})
        confirmed = int(chain.get("funded_txo_sum", 0)) - int(chain.get("spent_txo_sum", 0))
        unconfirmed = int(mempool.get("funded_txo_sum", 0)) - int(mempool.get("spent_txo_sum", 0))
        return {
            "confirmed": confirmed,
            "unconfirmed": unconfirmed,
            "total_received": int(chain.get("funded_txo_sum", 0)) + int(mempool.get("funded_txo_sum", 0)),
        }

    async def get_address_txs(self, address: str) -> List[Dict[str, Any]]:
        return await self._get(f"/address/{address}/txs")

    async def get_tx(self, txid: str) -> Dict[str, Any]:
        return await self._get(f"/tx/{txid}")

    async def get_tip_height(self) -> int:
        text = await self._get("/blocks/tip/height", expect_json=False)
        try:
            return int(str(text).strip())
        except ValueError as e:
            raise ExternalUnavailableError(f"Chain API returned a bad tip height: {text!r}") from e


def paid_to_address(tx: Dict[str, Any], address: str) -> int:
    """Satoshis a transaction pays to `address`"""
    return sum(
        int(vout.get("value", 0))
        for vout in tx.get("vout", [])
        if vout.get("scriptpubkey_address") == address
    )


def confirmations_for(tx: Dict[str, Any], tip_height: Optional[int]) -> int:
    """tip - block_height + 1 for confirmed txs, 0 while in the mempool"""
    status = tx.get("status") or {}
    if not status.get("confirmed"):
        return 0
    block_height = status.get("block_height")
    if block_height is None or tip_height is None:
        return 1
    return max(1, int(tip_height) - int(block_height) + 1)
