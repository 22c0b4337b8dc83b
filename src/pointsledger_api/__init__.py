"""Loyalty points ledger and reward redemption service."""
