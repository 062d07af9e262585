"""Tick control plane: lock, preflight, budgets, state persistence and the tick engine."""
