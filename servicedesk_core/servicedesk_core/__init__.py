"""Service-desk core: workflow rules, ledger arithmetic, billing rules and state store."""

__version__ = "0.1.0"
