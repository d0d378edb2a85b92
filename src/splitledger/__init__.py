"""SplitLedger - shared expenses, the debts they create, and getting them paid back."""

__version__ = "0.1.0"
