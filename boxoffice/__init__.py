"""Box office payments: checkout reconciliation, scheduled maintenance and counter cash sessions."""

__version__ = "0.1.0"
