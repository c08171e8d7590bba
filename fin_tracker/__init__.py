"""fin-tracker: transaction import, categorization and rule learning."""

__version__ = "0.1.0"
