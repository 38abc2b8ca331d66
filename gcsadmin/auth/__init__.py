"""Operator login, token storage and identity lookup."""
