"""Persistence for portfolios, strategies, positions and breaker events."""
