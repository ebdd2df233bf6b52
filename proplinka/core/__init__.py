"""Marketplace domain logic: fees, listings, offers, transactions and payments."""
