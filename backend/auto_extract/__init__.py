"""Grounded note extraction engine."""
