"""Wallet ownership ledger package."""
