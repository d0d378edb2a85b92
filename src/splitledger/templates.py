"""Message templates - all user-facing text lives here."""

from decimal import Decimal

from .models import BankAccount, Debt, Expense, ExpensePage, PaymentInfo, PromptPay, Transfer

# Currency symbols for display
CURRENCY_SYMBOLS: dict[str, str] = {
    "THB": "฿",
    "EUR": "€",
    "USD": "$",
    "JPY": "¥",
}


def get_currency_symbol(currency_code: str) -> str:
    """Get display symbol for currency code."""
    return CURRENCY_SYMBOLS.get(currency_code.upper(), currency_code)


def format_currency(amount: Decimal, currency: str) -> str:
    """Format amount with currency symbol."""
    symbol = get_currency_symbol(currency)
    if symbol == currency:
        return f"{amount} {currency}"
    return f"{symbol}{amount}"


def format_payment_info(info: PaymentInfo | None) -> str:
    """Describe how a creditor wants to be paid."""
    if isinstance(info, PromptPay):
        return f"PromptPay {info.id}"
    if isinstance(info, BankAccount):
        return f"{info.bank_name} {info.account_number} ({info.account_name})"
    return "ask them for payment details"


def format_transfers(transfers: list[Transfer], currency: str) -> str:
    """Format suggested transfers for display."""
    if not transfers:
        return ALL_SETTLED

    return "\n".join(
        f"• {t.debtor} → {t.creditor}: {format_currency(t.amount, currency)}" for t in transfers
    )


def format_debt_line(debt: Debt) -> str:
    """One-line description of a debt."""
    line = (
        f"{debt.id} {debt.debtor} → {debt.creditor}: "
        f"{format_currency(debt.amount, debt.currency)} [{debt.status.value}]"
    )
    if debt.amount != debt.original_amount:
        line += f" of {format_currency(debt.original_amount, debt.currency)}"
    return line


def format_debts_list(debts: list[Debt]) -> str:
    """Format a list of debts for display."""
    if not debts:
        return ALL_SETTLED
    return "\n".join(f"• {format_debt_line(d)}" for d in debts)


def format_expense_line(expense: Expense) -> str:
    """One-line description of an expense."""
    return (
        f"{expense.id} *{expense.title}* "
        f"{format_currency(expense.amount, expense.currency)} "
        f"(paid by {expense.paid_by}, {expense.category.value})"
    )


def format_expense_page(page: ExpensePage) -> str:
    """Format one page of expenses with a page footer."""
    if not page.items:
        return NO_EXPENSES
    lines = [f"• {format_expense_line(e)}" for e in page.items]
    lines.append(f"Page {page.page} of {page.pages} ({page.total} expense(s))")
    return "\n".join(lines)


# === REMINDERS ===

REMINDER = (
    "🔔 Reminder: you owe {creditor} {amount_display} for *{expense_title}* "
    "in {group_name}.\n"
    "Pay via {payment_info}."
)

REMINDER_OVERDUE = (
    "⏰ Overdue by {days} day(s): you owe {creditor} {amount_display} for "
    "*{expense_title}* in {group_name}.\n"
    "Pay via {payment_info}."
)


# === NOTHING TO DO ===

ALL_SETTLED = "✨ All settled up! No outstanding debts."

NO_EXPENSES = "No expenses found."
