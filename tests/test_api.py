"""Tests for the HTTP-shaped API handlers."""

from typing import Any
from unittest.mock import patch
from uuid import uuid4

import pytest

from splitledger.api import ApiHandler
from splitledger.config import Settings
from splitledger.errors import AuthenticationError
from splitledger.ledger import DebtLedger
from splitledger.models import IdentityProfile
from splitledger.ratelimit import SlidingWindowRateLimiter
from splitledger.state import LedgerStore

NAMES = {"A": "Anong", "B": "Boon", "C": "Chai", "D": "Dao"}


class FakeIdentity:
    """Identity provider that accepts tokens of the form tok-<user id>."""

    def fetch_profile(self, token: str) -> IdentityProfile:
        user_id = token.removeprefix("tok-")
        if user_id not in NAMES:
            raise AuthenticationError("Invalid access token")
        return IdentityProfile(user_id=user_id, display_name=NAMES[user_id])


def auth(user_id: str) -> str:
    return f"Bearer tok-{user_id}"


@pytest.fixture
def api(ledger: DebtLedger, users: list[str]) -> ApiHandler:
    """API handler with A, B and C already registered."""
    return ApiHandler(ledger, FakeIdentity())


@pytest.fixture
def group_id(api: ApiHandler) -> str:
    """Group created by A with B and C as members."""
    response = api.create_group(auth("A"), {"name": "Trip", "member_ids": ["B", "C"]})
    assert response.status == 201
    return response.body["data"]["id"]


@pytest.fixture
def lunch(api: ApiHandler, group_id: str) -> dict[str, Any]:
    """฿900 lunch paid by A, shared by everyone."""
    response = api.create_expense(
        auth("A"), {"group_id": group_id, "title": "Lunch", "amount": "900"}
    )
    assert response.status == 201
    return response.body["data"]


def _debt_of(lunch: dict[str, Any], debtor: str) -> str:
    return next(d["id"] for d in lunch["debts"] if d["debtor"] == debtor)


class TestAuthentication:
    """Tests for credential handling."""

    def test_missing_header(self, api: ApiHandler) -> None:
        """Test a request without credentials is refused."""
        response = api.me(None)
        assert response.status == 401
        assert response.body == {"success": False, "message": "No token, authorization denied"}

    def test_wrong_scheme(self, api: ApiHandler) -> None:
        """Test only bearer tokens are accepted."""
        assert api.me("Basic abc").status == 401

    def test_unknown_token(self, api: ApiHandler) -> None:
        """Test a token the provider rejects."""
        assert api.me("Bearer nope").status == 401

    def test_first_request_registers_user(self, api: ApiHandler) -> None:
        """Test a new identity becomes a user on first use."""
        response = api.me(auth("D"))
        assert response.status == 200
        assert response.body["data"]["display_name"] == "Dao"


class TestRateLimit:
    """Tests for per-credential rate limiting."""

    def test_limit_exceeded(self, ledger: DebtLedger, users: list[str]) -> None:
        """Test requests beyond the window budget get 429."""
        api = ApiHandler(
            ledger, FakeIdentity(), SlidingWindowRateLimiter(max_requests=2, window_seconds=60)
        )
        assert api.me(auth("A")).status == 200
        assert api.me(auth("A")).status == 200
        response = api.me(auth("A"))
        assert response.status == 429
        assert api.me(auth("B")).status == 200

    def test_default_limit_from_settings(self, store: LedgerStore, users: list[str]) -> None:
        """Test a handler without an explicit limiter uses the configured budget."""
        settings = Settings(state_dir=store.state_dir, rate_limit_requests=2)
        api = ApiHandler(DebtLedger(store, settings), FakeIdentity())

        assert api.rate_limiter.max_requests == 2
        assert api.rate_limiter.window_seconds == settings.rate_limit_window_seconds
        assert [api.me(auth("A")).status for _ in range(3)] == [200, 200, 429]


class TestGroupsEndpoints:
    """Tests for group endpoints."""

    def test_list_and_get(self, api: ApiHandler, group_id: str) -> None:
        """Test members see the group; outsiders do not."""
        listed = api.list_groups(auth("B"))
        assert [g["id"] for g in listed.body["data"]] == [group_id]

        assert api.get_group(auth("C"), group_id).status == 200
        assert api.get_group(auth("D"), group_id).status == 403

    def test_unknown_and_malformed_ids(self, api: ApiHandler) -> None:
        """Test 404 for a missing group and 400 for a malformed id."""
        assert api.get_group(auth("A"), str(uuid4())).status == 404
        assert api.get_group(auth("A"), "not-a-uuid").status == 400

    def test_add_and_remove_member(self, api: ApiHandler, group_id: str) -> None:
        """Test membership changes through the API."""
        api.me(auth("D"))
        added = api.add_member(auth("B"), group_id, {"user_id": "D"})
        assert added.status == 200
        assert "D" in [m["user_id"] for m in added.body["data"]["members"]]

        assert api.remove_member(auth("B"), group_id, "C").status == 403
        assert api.remove_member(auth("A"), group_id, "D").status == 200

    def test_update_group(self, api: ApiHandler, group_id: str) -> None:
        """Test admins rename the group; members cannot."""
        response = api.update_group(auth("A"), group_id, {"name": "Trip 2", "currency": "eur"})
        assert response.status == 200
        assert response.body["data"]["name"] == "Trip 2"
        assert response.body["data"]["currency"] == "EUR"

        assert api.update_group(auth("B"), group_id, {"name": "Nope"}).status == 403
        assert api.update_group(auth("A"), group_id, {"name": ""}).status == 400

    def test_group_stats(self, api: ApiHandler, group_id: str, lunch: dict[str, Any]) -> None:
        """Test headline numbers for members only."""
        stats = api.group_stats(auth("C"), group_id)
        assert stats.status == 200
        assert stats.body["data"]["member_count"] == 3
        assert stats.body["data"]["expense_count"] == 1
        assert stats.body["data"]["total_expenses"] == "900"
        assert stats.body["data"]["outstanding"] == "600.00"
        assert api.group_stats(auth("D"), group_id).status == 403

    def test_invalid_payload(self, api: ApiHandler) -> None:
        """Test a payload that fails model validation is a 400."""
        response = api.create_group(auth("A"), {"currency": "THB"})
        assert response.status == 400
        assert response.body["success"] is False


class TestExpenseEndpoints:
    """Tests for expense endpoints."""

    def test_create_returns_debts(self, lunch: dict[str, Any]) -> None:
        """Test the created expense comes back with its debts."""
        assert lunch["expense"]["amount"] == "900"
        assert sorted(d["debtor"] for d in lunch["debts"]) == ["B", "C"]
        assert all(d["amount"] == "300.00" for d in lunch["debts"])

    def test_custom_split(self, api: ApiHandler, group_id: str) -> None:
        """Test custom split values in the payload."""
        response = api.create_expense(
            auth("B"),
            {
                "group_id": group_id,
                "title": "Taxi",
                "amount": "250",
                "split_method": "custom",
                "split_values": {"A": "100", "B": "50", "C": "100"},
            },
        )
        assert response.status == 201
        owed = {d["debtor"]: d["amount"] for d in response.body["data"]["debts"]}
        assert owed == {"A": "100", "C": "100"}

    def test_bad_split_is_400(self, api: ApiHandler, group_id: str) -> None:
        """Test a split that does not add up."""
        response = api.create_expense(
            auth("A"),
            {
                "group_id": group_id,
                "title": "Taxi",
                "amount": "250",
                "split_method": "percentage",
                "split_values": {"A": 50, "B": 20},
            },
        )
        assert response.status == 400
        assert "100%" in response.body["message"]

    def test_get_expense(self, api: ApiHandler, group_id: str, lunch: dict[str, Any]) -> None:
        """Test participants fetch the expense; others get 403."""
        expense_id = lunch["expense"]["id"]
        response = api.get_expense(auth("B"), expense_id)
        assert response.status == 200
        assert response.body["data"]["title"] == "Lunch"
        assert api.get_expense(auth("D"), expense_id).status == 403
        assert api.get_expense(auth("A"), str(uuid4())).status == 404

    def test_user_expenses_paginated(
        self, api: ApiHandler, group_id: str, lunch: dict[str, Any]
    ) -> None:
        """Test the per-user listing reports its paging."""
        api.create_expense(auth("B"), {"group_id": group_id, "title": "Taxi", "amount": "90"})

        response = api.user_expenses(auth("C"), "A", page=1, limit=1)
        assert response.status == 200
        data = response.body["data"]
        assert (data["page"], data["limit"], data["total"], data["pages"]) == (1, 1, 2, 2)
        assert len(data["items"]) == 1
        assert api.user_expenses(auth("C"), "A", page=0).status == 400

    def test_categories(self, api: ApiHandler) -> None:
        """Test the category list is available to any signed-in user."""
        response = api.expense_categories(auth("A"))
        assert response.status == 200
        assert "food" in response.body["data"]
        assert api.expense_categories(None).status == 401

    def test_update_and_delete(
        self, api: ApiHandler, group_id: str, lunch: dict[str, Any]
    ) -> None:
        """Test the payer edits then deletes the expense."""
        expense_id = lunch["expense"]["id"]

        assert api.update_expense(auth("B"), expense_id, {"title": "x"}).status == 403

        updated = api.update_expense(auth("A"), expense_id, {"amount": "1200"})
        assert updated.status == 200
        assert {d["amount"] for d in updated.body["data"]["debts"]} == {"400.00"}

        deleted = api.delete_expense(auth("A"), expense_id)
        assert deleted.status == 200
        assert deleted.body["data"] == []
        assert api.list_expenses(auth("C"), group_id).body["data"] == []


class TestDebtEndpoints:
    """Tests for debt endpoints."""

    def test_list_debts_by_role(self, api: ApiHandler, lunch: dict[str, Any]) -> None:
        """Test listing debts as creditor and debtor."""
        assert len(api.list_debts(auth("A"), role="creditor").body["data"]) == 2
        assert api.list_debts(auth("A"), role="debtor").body["data"] == []
        assert len(api.list_debts(auth("B"), status="pending").body["data"]) == 1

    def test_bad_status_filter(self, api: ApiHandler, lunch: dict[str, Any]) -> None:
        """Test an unknown status filter is a 400."""
        assert api.list_debts(auth("A"), status="forgiven").status == 400

    def test_only_parties_see_debt(self, api: ApiHandler, lunch: dict[str, Any]) -> None:
        """Test a debt is visible to its debtor and creditor only."""
        debt_id = _debt_of(lunch, "B")
        assert api.get_debt(auth("A"), debt_id).status == 200
        assert api.get_debt(auth("B"), debt_id).status == 200
        assert api.get_debt(auth("C"), debt_id).status == 403

    def test_partial_payment_and_overpayment(
        self, api: ApiHandler, lunch: dict[str, Any]
    ) -> None:
        """Test a partial payment, then an overpayment that is refused."""
        debt_id = _debt_of(lunch, "B")

        paid = api.pay_debt(auth("B"), debt_id, {"amount": "100", "note": "first half"})
        assert paid.status == 200
        assert paid.body["data"]["amount"] == "200.00"
        assert paid.body["data"]["payments"][0]["confirmed_by"] == "B"

        over = api.pay_debt(auth("B"), debt_id, {"amount": "500"})
        assert over.status == 400
        assert "cannot exceed" in over.body["message"]

    def test_settle(self, api: ApiHandler, lunch: dict[str, Any]) -> None:
        """Test the creditor marks a debt paid."""
        debt_id = _debt_of(lunch, "C")
        settled = api.settle_debt(auth("A"), debt_id, {"method": "cash"})
        assert settled.status == 200
        assert settled.body["data"]["is_paid"] is True
        assert settled.body["data"]["settlement_method"] == "cash"

        assert api.settle_debt(auth("A"), debt_id).status == 400

    def test_group_views(self, api: ApiHandler, group_id: str, lunch: dict[str, Any]) -> None:
        """Test group debts, summary, transfers and recalculation."""
        assert len(api.group_debts(auth("B"), group_id).body["data"]) == 2
        assert api.group_debts(auth("D"), group_id).status == 403

        summary = api.group_summary(auth("A"), group_id).body["data"]
        assert summary["pending"] == {"amount": "600.00", "count": 2}

        transfers = api.suggest_transfers(auth("C"), group_id).body["data"]
        assert {(t["debtor"], t["creditor"]) for t in transfers} == {("B", "A"), ("C", "A")}

        assert len(api.calculate_group(auth("A"), group_id).body["data"]) == 2

    def test_optimize(self, api: ApiHandler, group_id: str, lunch: dict[str, Any]) -> None:
        """Test netting through the API."""
        api.create_expense(
            auth("B"),
            {
                "group_id": group_id,
                "title": "Drinks",
                "amount": "200",
                "participants": ["A", "B"],
            },
        )
        response = api.optimize_group(auth("A"), group_id)
        assert response.status == 200
        assert response.body["data"]["netted_pairs"] == 1

    def test_summary_and_overdue(self, api: ApiHandler, lunch: dict[str, Any]) -> None:
        """Test the caller's cross-group summary and overdue list."""
        summary = api.debt_summary(auth("A")).body["data"]
        assert summary["net_balance"] == "600.00"
        assert summary["owed_to_me"]["count"] == 2

        assert api.overdue_debts(auth("A")).body["data"] == []


class TestUnexpectedErrors:
    """Tests for the catch-all error path."""

    def test_server_error_hides_details(self, api: ApiHandler) -> None:
        """Test an unexpected exception becomes a generic 500."""
        with patch("splitledger.api.balances.user_summary", side_effect=RuntimeError("boom")):
            response = api.debt_summary(auth("A"))
        assert response.status == 500
        assert response.body == {"success": False, "message": "Server error"}
