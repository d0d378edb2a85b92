"""HTTP-shaped facade over the ledger.

One method per endpoint. Each authenticates the caller, runs exactly one core
operation and returns an ApiResponse whose body is `{"success": True, "data": ...}`
or `{"success": False, "message": ...}`. Web framework glue only has to copy
`status` and `body` onto the wire.
"""

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Any
from uuid import UUID

import pydantic
from pydantic import BaseModel, Field

from . import balances, expenses, groups
from .errors import AuthenticationError, AuthorizationError, LedgerError, RateLimitExceeded
from .errors import ValidationError as LedgerValidationError
from .ledger import DebtLedger, UserRole
from .line import IdentityProvider
from .models import (
    Category,
    DebtStatus,
    PaymentInfo,
    Role,
    SettlementMethod,
    SplitMethod,
    User,
)
from .ratelimit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


# === Request bodies ===


class ProfileRequest(BaseModel):
    display_name: str | None = None
    payment_info: PaymentInfo | None = None
    clear_payment_info: bool = False


class CreateGroupRequest(BaseModel):
    name: str
    currency: str = "THB"
    description: str = ""
    member_ids: list[str] = Field(default_factory=list)
    reminder_interval_hours: int = 24


class UpdateGroupRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    currency: str | None = None
    reminder_interval_hours: int | None = None


class AddMemberRequest(BaseModel):
    user_id: str
    role: Role = Role.MEMBER


class CreateExpenseRequest(BaseModel):
    group_id: UUID
    title: str
    amount: Decimal
    paid_by: str | None = None
    participants: list[str] | None = None
    split_method: SplitMethod = SplitMethod.EQUAL
    split_values: dict[str, Decimal] | None = None
    category: Category = Category.OTHER
    description: str = ""


class UpdateExpenseRequest(BaseModel):
    title: str | None = None
    amount: Decimal | None = None
    participants: list[str] | None = None
    split_method: SplitMethod | None = None
    split_values: dict[str, Decimal] | None = None
    category: Category | None = None
    description: str | None = None


class PaymentRequest(BaseModel):
    amount: Decimal
    note: str = ""


class SettleRequest(BaseModel):
    method: SettlementMethod = SettlementMethod.PROMPTPAY
    proof_url: str = ""


class ApiResponse(BaseModel):
    """Status code plus JSON body."""

    status: int
    body: dict[str, Any]


def _to_json(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, (list, tuple)):
        return [_to_json(item) for item in data]
    if isinstance(data, dict):
        return {str(k): _to_json(v) for k, v in data.items()}
    if isinstance(data, (Decimal, UUID)):
        return str(data)
    return data


def _uuid(value: str | UUID) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(value)
    except ValueError as e:
        raise LedgerValidationError(f"Invalid id: {value}") from e


def _status(value: str | None) -> DebtStatus | None:
    if not value:
        return None
    try:
        return DebtStatus(value)
    except ValueError as e:
        raise LedgerValidationError(f"Unknown debt status: {value}") from e


def _bearer(authorization: str | None) -> str:
    if not authorization:
        raise AuthenticationError("No token, authorization denied")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    return token.strip()


class ApiHandler:
    """
    Endpoint handlers.

    Args:
        ledger: Debt ledger (and its store)
        identity: Identity provider used to authenticate bearer tokens
        rate_limiter: Per-credential request limiter (default: built from the
            ledger settings)
    """

    def __init__(
        self,
        ledger: DebtLedger,
        identity: IdentityProvider,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ):
        self.ledger = ledger
        self.store = ledger.store
        self.identity = identity
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_requests=ledger.settings.rate_limit_requests,
            window_seconds=ledger.settings.rate_limit_window_seconds,
        )

    # === Plumbing ===

    def authenticate(self, authorization: str | None) -> User:
        """Resolve a bearer credential to a (created or refreshed) user."""
        token = _bearer(authorization)
        profile = self.identity.fetch_profile(token)
        return groups.sign_in(self.store, profile)

    def _call(
        self,
        authorization: str | None,
        operation: Callable[[User], Any],
        status: int = 200,
    ) -> ApiResponse:
        try:
            key = authorization or "anonymous"
            if not self.rate_limiter.allow(key):
                raise RateLimitExceeded("Rate limit exceeded")
            user = self.authenticate(authorization)
            data = operation(user)
        except LedgerError as e:
            if e.status_code >= 500:
                logger.error("%s: %s", type(e).__name__, e.message)
            else:
                logger.info("%s: %s", type(e).__name__, e.message)
            return ApiResponse(status=e.status_code, body={"success": False, "message": e.message})
        except pydantic.ValidationError as e:
            return ApiResponse(status=400, body={"success": False, "message": str(e)})
        except Exception:
            logger.exception("Unexpected error handling request")
            return ApiResponse(status=500, body={"success": False, "message": "Server error"})
        return ApiResponse(status=status, body={"success": True, "data": _to_json(data)})

    def _member_group(self, user: User, group_id: str | UUID):
        group = self.store.require_group(_uuid(group_id))
        groups.require_member(group, user.id)
        return group

    def _party_debt(self, user: User, debt_id: str | UUID):
        debt = self.store.require_debt(_uuid(debt_id))
        if user.id not in (debt.debtor, debt.creditor):
            raise AuthorizationError("Access denied")
        return debt

    # === Users ===

    def me(self, authorization: str | None) -> ApiResponse:
        """GET /users/me"""
        return self._call(authorization, lambda user: user)

    def update_me(self, authorization: str | None, payload: dict[str, Any]) -> ApiResponse:
        """PUT /users/me"""

        def op(user: User) -> User:
            req = ProfileRequest.model_validate(payload)
            return groups.update_profile(
                self.store,
                user.id,
                display_name=req.display_name,
                payment_info=req.payment_info,
                clear_payment_info=req.clear_payment_info,
            )

        return self._call(authorization, op)

    # === Groups ===

    def create_group(self, authorization: str | None, payload: dict[str, Any]) -> ApiResponse:
        """POST /groups"""

        def op(user: User):
            req = CreateGroupRequest.model_validate(payload)
            return groups.create_group(
                self.store,
                user.id,
                req.name,
                currency=req.currency,
                description=req.description,
                member_ids=req.member_ids,
                reminder_interval_hours=req.reminder_interval_hours,
            )

        return self._call(authorization, op, status=201)

    def list_groups(self, authorization: str | None) -> ApiResponse:
        """GET /groups"""
        return self._call(authorization, lambda user: self.store.list_groups(user.id))

    def get_group(self, authorization: str | None, group_id: str) -> ApiResponse:
        """GET /groups/{id}"""
        return self._call(authorization, lambda user: self._member_group(user, group_id))

    def update_group(
        self, authorization: str | None, group_id: str, payload: dict[str, Any]
    ) -> ApiResponse:
        """PUT /groups/{id}"""

        def op(user: User):
            req = UpdateGroupRequest.model_validate(payload)
            return groups.update_group(
                self.store,
                user.id,
                _uuid(group_id),
                name=req.name,
                description=req.description,
                currency=req.currency,
                reminder_interval_hours=req.reminder_interval_hours,
            )

        return self._call(authorization, op)

    def add_member(
        self, authorization: str | None, group_id: str, payload: dict[str, Any]
    ) -> ApiResponse:
        """POST /groups/{id}/members"""

        def op(user: User):
            req = AddMemberRequest.model_validate(payload)
            return groups.add_member(self.store, user.id, _uuid(group_id), req.user_id, req.role)

        return self._call(authorization, op)

    def remove_member(self, authorization: str | None, group_id: str, user_id: str) -> ApiResponse:
        """DELETE /groups/{id}/members/{userId}"""
        return self._call(
            authorization,
            lambda user: groups.remove_member(self.store, user.id, _uuid(group_id), user_id),
        )

    def deactivate_group(self, authorization: str | None, group_id: str) -> ApiResponse:
        """DELETE /groups/{id}"""
        return self._call(
            authorization,
            lambda user: groups.deactivate_group(self.store, user.id, _uuid(group_id)),
        )

    def group_summary(self, authorization: str | None, group_id: str) -> ApiResponse:
        """GET /groups/{id}/summary"""

        def op(user: User):
            group = self._member_group(user, group_id)
            return balances.group_summary(self.store, group.id)

        return self._call(authorization, op)

    def group_stats(self, authorization: str | None, group_id: str) -> ApiResponse:
        """GET /groups/{id}/stats"""

        def op(user: User):
            group = self._member_group(user, group_id)
            return balances.group_stats(self.store, group.id)

        return self._call(authorization, op)

    # === Expenses ===

    def create_expense(self, authorization: str | None, payload: dict[str, Any]) -> ApiResponse:
        """POST /expenses"""

        def op(user: User):
            req = CreateExpenseRequest.model_validate(payload)
            expense, debts = expenses.create_expense(
                self.ledger,
                user.id,
                req.group_id,
                req.title,
                req.amount,
                paid_by=req.paid_by,
                participants=req.participants,
                method=req.split_method,
                params=req.split_values,
                category=req.category,
                description=req.description,
            )
            return {"expense": expense, "debts": debts}

        return self._call(authorization, op, status=201)

    def update_expense(
        self, authorization: str | None, expense_id: str, payload: dict[str, Any]
    ) -> ApiResponse:
        """PUT /expenses/{id}"""

        def op(user: User):
            req = UpdateExpenseRequest.model_validate(payload)
            expense, debts = expenses.update_expense(
                self.ledger,
                user.id,
                _uuid(expense_id),
                title=req.title,
                amount=req.amount,
                participants=req.participants,
                method=req.split_method,
                params=req.split_values,
                category=req.category,
                description=req.description,
            )
            return {"expense": expense, "debts": debts}

        return self._call(authorization, op)

    def delete_expense(self, authorization: str | None, expense_id: str) -> ApiResponse:
        """DELETE /expenses/{id}"""
        return self._call(
            authorization,
            lambda user: expenses.delete_expense(self.ledger, user.id, _uuid(expense_id)),
        )

    def list_expenses(self, authorization: str | None, group_id: str) -> ApiResponse:
        """GET /expenses/group/{id}"""
        return self._call(
            authorization,
            lambda user: expenses.list_expenses(self.ledger, user.id, _uuid(group_id)),
        )

    def get_expense(self, authorization: str | None, expense_id: str) -> ApiResponse:
        """GET /expenses/{id}"""
        return self._call(
            authorization,
            lambda user: expenses.get_expense(self.ledger, user.id, _uuid(expense_id)),
        )

    def user_expenses(
        self, authorization: str | None, user_id: str, page: int = 1, limit: int = 10
    ) -> ApiResponse:
        """GET /expenses/user/{userId}?page=&limit="""

        def op(user: User):
            return expenses.expenses_for_user(self.ledger, user.id, user_id, page, limit)

        return self._call(authorization, op)

    def expense_categories(self, authorization: str | None) -> ApiResponse:
        """GET /expenses/categories"""
        return self._call(authorization, lambda user: expenses.categories())

    # === Debts ===

    def list_debts(
        self,
        authorization: str | None,
        status: str | None = None,
        role: UserRole = "any",
    ) -> ApiResponse:
        """GET /debts"""

        def op(user: User):
            return self.ledger.debts_for_user(user.id, role=role, status=_status(status))

        return self._call(authorization, op)

    def get_debt(self, authorization: str | None, debt_id: str) -> ApiResponse:
        """GET /debts/{id}"""
        return self._call(authorization, lambda user: self._party_debt(user, debt_id))

    def pay_debt(
        self, authorization: str | None, debt_id: str, payload: dict[str, Any]
    ) -> ApiResponse:
        """POST /debts/{id}/payments"""

        def op(user: User):
            debt = self._party_debt(user, debt_id)
            req = PaymentRequest.model_validate(payload)
            return self.ledger.add_partial_payment(
                debt.id, req.amount, note=req.note, confirmed_by=user.id
            )

        return self._call(authorization, op)

    def settle_debt(
        self, authorization: str | None, debt_id: str, payload: dict[str, Any] | None = None
    ) -> ApiResponse:
        """POST /debts/{id}/settle"""

        def op(user: User):
            debt = self._party_debt(user, debt_id)
            req = SettleRequest.model_validate(payload or {})
            return self.ledger.mark_paid(
                debt.id, method=req.method, proof_url=req.proof_url, confirmed_by=user.id
            )

        return self._call(authorization, op)

    def group_debts(
        self, authorization: str | None, group_id: str, status: str | None = None
    ) -> ApiResponse:
        """GET /debts/group/{id}"""

        def op(user: User):
            group = self._member_group(user, group_id)
            return self.ledger.debts_for_group(group.id, status=_status(status))

        return self._call(authorization, op)

    def calculate_group(self, authorization: str | None, group_id: str) -> ApiResponse:
        """POST /debts/group/{id}/calculate"""

        def op(user: User):
            group = self._member_group(user, group_id)
            return self.ledger.recalculate_group(group.id)

        return self._call(authorization, op)

    def optimize_group(self, authorization: str | None, group_id: str) -> ApiResponse:
        """POST /debts/group/{id}/optimize"""

        def op(user: User):
            group = self._member_group(user, group_id)
            netted = self.ledger.optimize(group.id)
            return {
                "netted_pairs": netted,
                "debts": self.ledger.debts_for_group(group.id),
            }

        return self._call(authorization, op)

    def suggest_transfers(self, authorization: str | None, group_id: str) -> ApiResponse:
        """GET /debts/group/{id}/transfers"""

        def op(user: User):
            group = self._member_group(user, group_id)
            return balances.suggest_transfers(self.store, group.id)

        return self._call(authorization, op)

    def debt_summary(self, authorization: str | None) -> ApiResponse:
        """GET /debts/summary"""
        return self._call(authorization, lambda user: balances.user_summary(self.store, user.id))

    def overdue_debts(self, authorization: str | None) -> ApiResponse:
        """GET /debts/overdue"""

        def op(user: User):
            return [
                d for d in self.ledger.overdue_debts() if user.id in (d.debtor, d.creditor)
            ]

        return self._call(authorization, op)
