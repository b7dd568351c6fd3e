"""
Event ingestion and reconciliation.

Pulls TaskRegistry, FamilyRegistry and RewardToken logs from the ledger,
orders and deduplicates them, handles reorganisations and applies them to
the read model.
"""
