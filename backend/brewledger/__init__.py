"""brewledger - inventory deduction and stock reconciliation engine."""

__version__ = "1.0.0"
