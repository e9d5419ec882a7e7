"""Quota ledger."""

from petrel.managers.quota.ledger import QuotaDelta, QuotaLedger

__all__ = ["QuotaDelta", "QuotaLedger"]
