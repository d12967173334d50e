"""Earnings, payout and payment reconciliation service."""
