"""Simulated execution: transaction simulator, wallet and positions."""
