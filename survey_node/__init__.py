"""Survey node: one vote per respondent, tallies that always match the ledger."""

__version__ = "0.2.0"
