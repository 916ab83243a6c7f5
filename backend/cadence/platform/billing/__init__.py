"""Subscription billing: ledger, state machine, sweep, dunning and usage."""
