"""Simulated drawdown-recovery trading agent for bonding-curve launch tokens."""

__version__ = "0.1.0"
