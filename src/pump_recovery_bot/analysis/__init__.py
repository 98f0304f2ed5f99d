"""Per-token analytics: holders, volume windows, pump and recovery metrics, lifecycle, wallet reputation."""
