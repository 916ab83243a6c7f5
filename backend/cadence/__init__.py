"""Cadence subscription billing engine."""
