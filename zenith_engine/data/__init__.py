"""Persistence for optimization jobs, runs and walk-forward results."""
