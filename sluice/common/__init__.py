"""Shared helpers for Sluice."""
