"""
Ledger access, checkpoints, settlement and read-model services.
"""
