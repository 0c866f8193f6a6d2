"""Billing Service application package."""
