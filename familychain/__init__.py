"""
FamilyChain reconciler.

Keeps the off-chain family/task/reward read model consistent with the
FamilyChain ledger contracts and settles approved task rewards.
"""

__version__ = "0.1.0"
