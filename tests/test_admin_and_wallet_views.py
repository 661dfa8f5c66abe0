"""
Read-side views: admin dashboard and wallets
"""

from decimal import Decimal

import pytest

from services.admin_statistics import AdminStatisticsService
from services.escrow_service import EscrowService
from services.wallet_service import WalletService
from utils.escrow_errors import ForbiddenError, NotFoundError, ValidationError
from utils.escrow_payloads import ResolvePayload


class TestDashboard:

    def test_empty_dashboard(self):
        stats = AdminStatisticsService.dashboard_stats()

        assert stats["totalEscrows"] == 0
        assert stats["activeDisputes"] == 0
        assert Decimal(stats["totalVolume"]) == 0
        assert set(stats["escrowsByStatus"]) >= {"AWAITING_AGREEMENT", "FUNDED", "RELEASED", "EXPIRED"}

    def test_counts_volume_and_fees(self, parties, create_escrow, advance_escrow):
        released = create_escrow(amount="0.1")
        advance_escrow(released["id"], "INSPECTION")
        EscrowService.accept(released["id"], parties.buyer)
        disputed = create_escrow(amount="0.2")
        advance_escrow(disputed["id"], "DISPUTED")
        create_escrow(amount="0.3")

        stats = AdminStatisticsService.dashboard_stats()

        assert stats["totalEscrows"] == 3
        assert stats["escrowsByStatus"]["RELEASED"] == 1
        assert stats["escrowsByStatus"]["DISPUTED"] == 1
        assert stats["escrowsByStatus"]["AWAITING_AGREEMENT"] == 1
        assert stats["activeDisputes"] == 1
        assert Decimal(stats["totalVolume"]) == Decimal("0.6")
        assert Decimal(stats["settledVolume"]) == Decimal("0.1")
        assert Decimal(stats["totalFees"]) == Decimal("0.002")
        assert stats["totalUsers"] == 4


class TestFeeStats:

    def test_fees_by_type(self, parties, create_escrow, advance_escrow):
        released = create_escrow(amount="0.1")
        advance_escrow(released["id"], "INSPECTION")
        EscrowService.accept(released["id"], parties.buyer)
        disputed = create_escrow(amount="0.1")
        advance_escrow(disputed["id"], "DISPUTED")
        EscrowService.resolve(disputed["id"], parties.arbiter, ResolvePayload.from_dict({"ruling": "BUYER"}))

        stats = AdminStatisticsService.fee_stats()

        assert Decimal(stats["byType"]["escrow_fee"]) == Decimal("0.002")
        assert Decimal(stats["byType"]["dispute_fee"]) == Decimal("0.003")
        assert Decimal(stats["totalFees"]) == Decimal("0.005")
        assert {entry["escrowId"] for entry in stats["recent"]} == {released["id"], disputed["id"]}


class TestListings:

    def test_disputes(self, create_escrow, advance_escrow):
        disputed = create_escrow()
        advance_escrow(disputed["id"], "DISPUTED")
        create_escrow()

        disputes = AdminStatisticsService.list_disputes()

        assert [d["id"] for d in disputes] == [disputed["id"]]
        assert disputes[0]["dispute"]["openedBy"] == "alice"

    def test_escrow_pagination(self, create_escrow):
        for _ in range(5):
            create_escrow()

        first = AdminStatisticsService.list_escrows(page=1, limit=2)
        last = AdminStatisticsService.list_escrows(page=3, limit=2)

        assert first["total"] == 5
        assert len(first["escrows"]) == 2
        assert len(last["escrows"]) == 1

    def test_escrow_status_filter(self, create_escrow, advance_escrow):
        funded = create_escrow()
        advance_escrow(funded["id"], "FUNDED")
        create_escrow()

        page = AdminStatisticsService.list_escrows(status="FUNDED")

        assert page["total"] == 1
        assert page["escrows"][0]["id"] == funded["id"]

    @pytest.mark.parametrize("kwargs", [{"page": 0}, {"limit": 0}, {"limit": 101}, {"status": "LOST"}])
    def test_invalid_listing_arguments(self, kwargs):
        with pytest.raises(ValidationError):
            AdminStatisticsService.list_escrows(**kwargs)

    def test_users(self, parties):
        page = AdminStatisticsService.list_users(limit=10)

        assert page["total"] == 4
        by_name = {user["username"]: user for user in page["users"]}
        assert by_name["arbiter"]["role"] == "admin"
        assert Decimal(by_name["alice"]["walletBalance"]) == Decimal("1.0")

    def test_audit_log_newest_first(self, parties, create_escrow):
        escrow = create_escrow()
        EscrowService.agree(escrow["id"], parties.seller)

        entries = AdminStatisticsService.audit_log(limit=10)

        assert [entry["action"] for entry in entries] == ["AGREE", "CREATE"]
        assert entries[0]["previousState"] == {"status": "AWAITING_AGREEMENT"}
        assert entries[0]["actor"] == "bob"


class TestUserRoles:

    def test_grant_admin_writes_audit_row(self, parties):
        user = AdminStatisticsService.update_user_role(parties.arbiter, parties.outsider, "admin")

        assert user["role"] == "admin"
        entry = AdminStatisticsService.audit_log(limit=1)[0]
        assert entry["action"] == "CHANGE_ROLE"
        assert entry["entityType"] == "user"
        assert entry["entityId"] == str(parties.outsider)
        assert entry["userId"] == parties.arbiter
        assert entry["actor"] == "arbiter"
        assert entry["details"] == {"from": "user", "to": "admin"}

    def test_granted_admin_can_resolve_disputes(self, parties, create_escrow, advance_escrow):
        disputed = advance_escrow(create_escrow()["id"], "DISPUTED")
        AdminStatisticsService.update_user_role(parties.arbiter, parties.outsider, "admin")

        resolved = EscrowService.resolve(disputed["id"], parties.outsider, ResolvePayload.from_dict({"ruling": "BUYER"}))

        assert resolved["status"] == "RESOLVED"

    def test_revoked_admin_loses_arbiter_authority(self, parties, create_escrow, advance_escrow, make_user):
        other_admin = make_user("ops", role="admin")
        disputed = advance_escrow(create_escrow()["id"], "DISPUTED")
        AdminStatisticsService.update_user_role(other_admin, parties.arbiter, "user")

        with pytest.raises(ForbiddenError):
            EscrowService.resolve(disputed["id"], parties.arbiter, ResolvePayload.from_dict({"ruling": "SELLER"}))

    def test_only_admins_change_roles(self, parties):
        with pytest.raises(ForbiddenError):
            AdminStatisticsService.update_user_role(parties.buyer, parties.seller, "admin")

        assert AdminStatisticsService.audit_log(limit=10) == []

    def test_cannot_change_own_role(self, parties):
        with pytest.raises(ValidationError):
            AdminStatisticsService.update_user_role(parties.arbiter, parties.arbiter, "user")

    @pytest.mark.parametrize("role", ["arbiter", "ADMIN", ""])
    def test_unknown_role_rejected(self, parties, role):
        with pytest.raises(ValidationError) as exc_info:
            AdminStatisticsService.update_user_role(parties.arbiter, parties.buyer, role)
        assert exc_info.value.details["field"] == "role"

    def test_unknown_target_user(self, parties):
        with pytest.raises(NotFoundError):
            AdminStatisticsService.update_user_role(parties.arbiter, 424242, "admin")


class TestWallets:

    def test_balance(self, parties):
        balance = WalletService.wallet_balance(parties.buyer)
        assert balance["currency"] == "BTC"
        assert Decimal(balance["availableBalance"]) == Decimal("1.0")

    def test_unknown_user(self):
        with pytest.raises(NotFoundError):
            WalletService.wallet_balance(424242)

    def test_transactions_newest_first(self, parties, create_escrow, advance_escrow):
        escrow = create_escrow()
        advance_escrow(escrow["id"], "FUNDED")
        WalletService.admin_deposit(parties.buyer, "0.5", "Top-up")

        entries = WalletService.wallet_transactions(parties.buyer)

        assert [entry["type"] for entry in entries] == ["deposit", "escrow_payment"]
        assert Decimal(entries[1]["amount"]) == Decimal("-0.1")
        assert entries[1]["escrowId"] == escrow["id"]

    def test_admin_deposit_creates_missing_wallet(self, make_user):
        user_id = make_user("carol", with_wallet=False)

        balance = WalletService.admin_deposit(user_id, "0.25")

        assert Decimal(balance["availableBalance"]) == Decimal("0.25")

    @pytest.mark.parametrize("amount", ["0", "-1", "abc"])
    def test_admin_deposit_rejects_bad_amounts(self, parties, amount):
        with pytest.raises(ValidationError):
            WalletService.admin_deposit(parties.buyer, amount)

    def test_user_escrows_by_role(self, parties, create_escrow):
        create_escrow()

        assert len(WalletService.list_user_escrows(parties.buyer, "buyer")) == 1
        assert WalletService.list_user_escrows(parties.buyer, "seller") == []
        assert len(WalletService.list_user_escrows(parties.seller)) == 1
