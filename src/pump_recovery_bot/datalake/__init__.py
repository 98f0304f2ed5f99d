"""Snapshot persistence and trade journal."""
