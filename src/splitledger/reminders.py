"""Reminder scheduling for unpaid debts.

Deciding who is due and advancing the reminder clock is pure ledger state;
delivering the message is the notifier's job.
"""

import logging
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

from . import templates
from .errors import ValidationError
from .ledger import DebtLedger, days_overdue
from .models import Debt
from .state import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_HOURS = 24


class Notifier(Protocol):
    """Delivers a text message to a user or group. Owns its own retry policy."""

    def send(self, target_id: str, text: str) -> bool: ...


def due_for_reminder(
    store: LedgerStore, now: datetime | None = None, group_id: UUID | None = None
) -> list[Debt]:
    """Unpaid debts whose next reminder is due or was never scheduled."""
    now = now or datetime.now()
    debts = store.debts_by_next_reminder(now)
    if group_id is not None:
        debts = [d for d in debts if d.group_id == group_id]
    return debts


def record_reminder_sent(
    ledger: DebtLedger,
    debt_id: UUID,
    now: datetime | None = None,
    interval_hours: int = DEFAULT_INTERVAL_HOURS,
) -> Debt:
    """
    Bump the reminder count and schedule the next reminder.

    Raises:
        ValidationError: If the debt is already paid or the interval is not positive
    """
    if interval_hours <= 0:
        raise ValidationError("Reminder interval must be positive")
    now = now or datetime.now()
    group_id = ledger.store.require_debt(debt_id).group_id

    with ledger.group_scope(group_id):
        debt = ledger.store.require_debt(debt_id)
        if debt.is_paid:
            raise ValidationError(f"Debt {debt_id} is paid, no reminder needed")
        debt.reminder_count += 1
        debt.last_reminder_sent = now
        debt.next_reminder_date = now + timedelta(hours=interval_hours)
        ledger.store.save_debt(debt)
    return debt


def render_reminder(store: LedgerStore, debt: Debt, now: datetime) -> str:
    """Build the reminder text for a debt."""
    creditor = store.get_user(debt.creditor)
    expense = store.get_expense(debt.expense_id)
    group = store.get_group(debt.group_id)

    fields = {
        "creditor": creditor.display_name if creditor else debt.creditor,
        "amount_display": templates.format_currency(debt.amount, debt.currency),
        "expense_title": expense.title if expense else "an expense",
        "group_name": group.name if group else "your group",
        "payment_info": templates.format_payment_info(
            creditor.payment_info if creditor else None
        ),
    }
    overdue_days = days_overdue(debt, now)
    if overdue_days:
        return templates.REMINDER_OVERDUE.format(days=overdue_days, **fields)
    return templates.REMINDER.format(**fields)


def send_due_reminders(
    ledger: DebtLedger, notifier: Notifier, now: datetime | None = None
) -> list[Debt]:
    """
    Periodic sweep: remind every debtor whose reminder is due.

    Delivery is fire-and-forget. A failed send is logged and the debt stays
    due, so the next sweep picks it up again.

    Returns:
        Debts whose reminder was delivered and recorded
    """
    now = now or datetime.now()
    reminded: list[Debt] = []

    for debt in due_for_reminder(ledger.store, now):
        text = render_reminder(ledger.store, debt, now)
        if not notifier.send(debt.debtor, text):
            logger.warning("Reminder for debt %s to %s was not delivered", debt.id, debt.debtor)
            continue

        group = ledger.store.get_group(debt.group_id)
        interval = (
            group.reminder_interval_hours if group else ledger.settings.reminder_interval_hours
        )
        try:
            reminded.append(record_reminder_sent(ledger, debt.id, now, interval))
        except ValidationError as e:
            # Paid between the query and the send
            logger.info("Not recording reminder for debt %s: %s", debt.id, e)

    logger.info("Reminder sweep at %s: %d sent", now.isoformat(), len(reminded))
    return reminded
