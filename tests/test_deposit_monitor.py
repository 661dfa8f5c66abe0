"""
Deposit monitor tests
Uses an in-memory chain client; no network access
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from database import managed_session
from models import DepositWatch, NotificationQueue
from services.deposit_monitor import DepositMonitor, select_funding_tx
from services.escrow_service import EscrowService
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_errors import ExternalUnavailableError

TIP = 800_000
TXID = "ab" * 32


def _tx(address, satoshis, height=None, txid=TXID):
    status = {"confirmed": height is not None}
    if height is not None:
        status["block_height"] = height
    return {"txid": txid, "status": status, "vout": [{"scriptpubkey_address": address, "value": satoshis}]}


class FakeChainClient:
    """Programmable stand-in for MempoolService"""

    def __init__(self, tip=TIP, down=False):
        self.tip = tip
        self.down = down
        self.balances = {}
        self.txs = {}
        self.unavailable = set()
        self.broken = set()
        self.tx_lookups = []

    def fund(self, address, satoshis, height=None, txid=TXID):
        self.balances[address] = satoshis
        self.txs[address] = [_tx(address, satoshis, height, txid)]

    async def get_tip_height(self):
        if self.down:
            raise ExternalUnavailableError("Chain API unreachable")
        return self.tip

    async def get_address_balance(self, address):
        if address in self.unavailable:
            raise ExternalUnavailableError("Chain API timed out")
        if address in self.broken:
            raise RuntimeError("unexpected payload")
        funded = self.balances.get(address, 0)
        return {"confirmed": funded, "unconfirmed": 0, "total_received": funded}

    async def get_address_txs(self, address):
        self.tx_lookups.append(address)
        return self.txs.get(address, [])


def _watch(escrow_id):
    with managed_session() as session:
        watch = session.execute(select(DepositWatch).where(DepositWatch.escrow_id == escrow_id)).scalar_one()
        session.expunge(watch)
        return watch


@pytest.fixture
def funded_escrow(hd_custody, create_escrow, advance_escrow):
    """Non-simulated escrow in FUNDED with an open watch"""
    escrow = create_escrow()
    return advance_escrow(escrow["id"], "FUNDED")


class TestSelectFundingTx:

    def test_first_tx_paying_expected_amount(self):
        small = _tx("addr", 10, txid="01" * 32)
        full = _tx("addr", 100, txid="02" * 32)
        assert select_funding_tx([small, full], "addr", 100) is full

    def test_falls_back_to_newest(self):
        small = _tx("addr", 10, txid="01" * 32)
        other = _tx("elsewhere", 500, txid="02" * 32)
        assert select_funding_tx([small, other], "addr", 100) is small

    def test_no_transactions(self):
        assert select_funding_tx([], "addr", 100) is None


class TestPollOnce:

    @pytest.mark.asyncio
    async def test_simulated_watches_are_not_polled(self, create_escrow, advance_escrow):
        escrow = create_escrow()
        advance_escrow(escrow["id"], "FUNDED")
        client = FakeChainClient()

        summary = await DepositMonitor(chain_client=client).poll_once()

        assert summary["checked"] == 0
        assert _watch(escrow["id"]).is_simulated is True

    @pytest.mark.asyncio
    async def test_confirmed_deposit_backfills_funded_escrow(self, funded_escrow):
        client = FakeChainClient()
        client.fund(funded_escrow["escrowAddress"], funded_escrow["amountSatoshis"], height=TIP - 2)

        summary = await DepositMonitor(chain_client=client, min_confirmations=1).poll_once()

        assert summary["checked"] == 1
        assert summary["backfilled"] == 1
        escrow = EscrowService.get_by_id(funded_escrow["id"])
        assert escrow["status"] == "FUNDED"
        assert escrow["confirmations"] == 3
        assert escrow["txHash"] == TXID
        assert escrow["history"] == funded_escrow["history"]
        watch = _watch(funded_escrow["id"])
        assert watch.status == "confirmed"
        assert watch.confirmed_at is not None

    @pytest.mark.asyncio
    async def test_closed_watch_is_not_polled_again(self, funded_escrow):
        client = FakeChainClient()
        client.fund(funded_escrow["escrowAddress"], funded_escrow["amountSatoshis"], height=TIP)
        monitor = DepositMonitor(chain_client=client, min_confirmations=1)

        await monitor.poll_once()
        summary = await monitor.poll_once()

        assert summary["checked"] == 0

    @pytest.mark.asyncio
    async def test_below_min_confirmations_stays_pending(self, funded_escrow):
        client = FakeChainClient()
        client.fund(funded_escrow["escrowAddress"], funded_escrow["amountSatoshis"], height=TIP - 2)

        summary = await DepositMonitor(chain_client=client, min_confirmations=6).poll_once()

        assert summary["pending"] == 1
        watch = _watch(funded_escrow["id"])
        assert watch.status == "watching"
        assert watch.confirmations == 3
        assert watch.detected_tx_hash == TXID
        assert watch.last_checked_at is not None
        assert EscrowService.get_by_id(funded_escrow["id"])["confirmations"] == 0

    @pytest.mark.asyncio
    async def test_mempool_tx_has_zero_confirmations(self, funded_escrow):
        client = FakeChainClient()
        client.fund(funded_escrow["escrowAddress"], funded_escrow["amountSatoshis"], height=None)

        summary = await DepositMonitor(chain_client=client, min_confirmations=1).poll_once()

        assert summary["pending"] == 1
        assert _watch(funded_escrow["id"]).confirmations == 0

    @pytest.mark.asyncio
    async def test_short_balance_skips_tx_lookup(self, funded_escrow):
        client = FakeChainClient()
        client.fund(funded_escrow["escrowAddress"], funded_escrow["amountSatoshis"] - 1, height=TIP)

        summary = await DepositMonitor(chain_client=client, min_confirmations=1).poll_once()

        assert summary["pending"] == 1
        assert client.tx_lookups == []
        assert _watch(funded_escrow["id"]).status == "watching"

    @pytest.mark.asyncio
    async def test_chain_outage_leaves_watches_untouched(self, funded_escrow):
        client = FakeChainClient(down=True)

        summary = await DepositMonitor(chain_client=client).poll_once()

        assert summary["unavailable"] == 1
        assert summary["checked"] == 0
        watch = _watch(funded_escrow["id"])
        assert watch.status == "watching"
        assert watch.last_checked_at is None

    @pytest.mark.asyncio
    async def test_one_failing_watch_does_not_block_others(self, hd_custody, create_escrow, advance_escrow):
        broken = advance_escrow(create_escrow()["id"], "FUNDED")
        flaky = advance_escrow(create_escrow()["id"], "FUNDED")
        healthy = advance_escrow(create_escrow()["id"], "FUNDED")
        client = FakeChainClient()
        client.broken.add(broken["escrowAddress"])
        client.unavailable.add(flaky["escrowAddress"])
        client.fund(healthy["escrowAddress"], healthy["amountSatoshis"], height=TIP)

        summary = await DepositMonitor(chain_client=client, min_confirmations=1).poll_once()

        assert summary["checked"] == 3
        assert summary["backfilled"] == 1
        assert summary["unavailable"] == 1
        assert [e["escrowId"] for e in summary["errors"]] == [broken["id"]]
        assert _watch(broken["id"]).status == "watching"
        assert _watch(flaky["id"]).status == "watching"
        assert _watch(healthy["id"]).status == "confirmed"

    @pytest.mark.asyncio
    async def test_batches_rotate_past_unfunded_watches(self, hd_custody, create_escrow, advance_escrow):
        unfunded = advance_escrow(create_escrow()["id"], "FUNDED")
        paid = advance_escrow(create_escrow()["id"], "FUNDED")
        client = FakeChainClient()
        client.fund(paid["escrowAddress"], paid["amountSatoshis"], height=TIP)
        monitor = DepositMonitor(chain_client=client, min_confirmations=1, batch_size=1)

        first = await monitor.poll_once()
        second = await monitor.poll_once()

        assert first["checked"] == 1
        assert first["pending"] == 1
        assert second["backfilled"] == 1
        assert client.tx_lookups == [paid["escrowAddress"]]
        assert _watch(paid["id"]).status == "confirmed"
        assert _watch(unfunded["id"]).status == "watching"

    @pytest.mark.asyncio
    async def test_failing_watch_moves_to_back_of_queue(self, hd_custody, create_escrow, advance_escrow):
        broken = advance_escrow(create_escrow()["id"], "FUNDED")
        paid = advance_escrow(create_escrow()["id"], "FUNDED")
        client = FakeChainClient()
        client.broken.add(broken["escrowAddress"])
        client.fund(paid["escrowAddress"], paid["amountSatoshis"], height=TIP)
        monitor = DepositMonitor(chain_client=client, min_confirmations=1, batch_size=1)

        first = await monitor.poll_once()
        second = await monitor.poll_once()

        assert [e["escrowId"] for e in first["errors"]] == [broken["id"]]
        assert second["backfilled"] == 1
        assert _watch(broken["id"]).last_checked_at is not None
        assert _watch(paid["id"]).status == "confirmed"

    @pytest.mark.asyncio
    async def test_deposit_moves_created_escrow_to_funded(self, parties, hd_custody, create_escrow, advance_escrow,
                                                          balance_of):
        escrow = advance_escrow(create_escrow()["id"], "CREATED")
        with managed_session() as session:
            session.add(DepositWatch(
                escrow_id=escrow["id"],
                address=escrow["escrowAddress"],
                expected_satoshis=escrow["amountSatoshis"],
                status="watching",
                is_simulated=False,
                created_at=get_naive_utc_now(),
            ))
        client = FakeChainClient()
        client.fund(escrow["escrowAddress"], escrow["amountSatoshis"], height=TIP - 5)

        summary = await DepositMonitor(chain_client=client, min_confirmations=1).poll_once()

        assert summary["funded"] == 1
        final = EscrowService.get_by_id(escrow["id"])
        assert final["status"] == "FUNDED"
        assert final["fundedAt"] is not None
        assert final["confirmations"] == 6
        assert final["history"][-1]["action"] == "DEPOSIT_CONFIRMED"
        assert final["history"][-1]["by"] == "deposit_monitor"
        # Funds arrived on-chain, the wallet is not debited
        assert balance_of(parties.buyer) == Decimal("1.0")
        with managed_session() as session:
            recipients = session.execute(
                select(NotificationQueue.user_id).where(NotificationQueue.template_name == "escrowFunded")
            ).scalars().all()
        assert sorted(recipients) == sorted([parties.buyer, parties.seller])

    @pytest.mark.asyncio
    async def test_recent_terminal_escrow_is_backfilled(self, parties, funded_escrow, advance_escrow):
        advance_escrow(funded_escrow["id"], "INSPECTION")
        EscrowService.accept(funded_escrow["id"], parties.buyer)
        client = FakeChainClient()
        client.fund(funded_escrow["escrowAddress"], funded_escrow["amountSatoshis"], height=TIP)

        summary = await DepositMonitor(chain_client=client, min_confirmations=1).poll_once()

        assert summary["backfilled"] == 1
        final = EscrowService.get_by_id(funded_escrow["id"])
        assert final["status"] == "RELEASED"
        assert final["confirmations"] == 1

    @pytest.mark.asyncio
    async def test_old_terminal_escrow_is_dropped(self, parties, funded_escrow, advance_escrow):
        advance_escrow(funded_escrow["id"], "INSPECTION")
        EscrowService.accept(funded_escrow["id"], parties.buyer)
        with managed_session() as session:
            session.execute(
                update(DepositWatch)
                .where(DepositWatch.escrow_id == funded_escrow["id"])
                .values(created_at=get_naive_utc_now() - timedelta(days=30))
            )
        client = FakeChainClient()
        client.fund(funded_escrow["escrowAddress"], funded_escrow["amountSatoshis"], height=TIP)

        summary = await DepositMonitor(chain_client=client, min_confirmations=1).poll_once()

        assert summary["checked"] == 0

    @pytest.mark.asyncio
    async def test_old_watch_on_active_escrow_still_polled(self, funded_escrow):
        with managed_session() as session:
            session.execute(
                update(DepositWatch)
                .where(DepositWatch.escrow_id == funded_escrow["id"])
                .values(created_at=get_naive_utc_now() - timedelta(days=30))
            )
        client = FakeChainClient()

        summary = await DepositMonitor(chain_client=client, min_confirmations=1).poll_once()

        assert summary["checked"] == 1
        assert summary["pending"] == 1
