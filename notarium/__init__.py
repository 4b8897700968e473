"""Notarium: evidence integrity ledger and attestation reconciliation engine."""

__version__ = "0.1.0"
