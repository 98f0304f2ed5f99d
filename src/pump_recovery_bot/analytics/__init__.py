"""Trading performance analytics."""
