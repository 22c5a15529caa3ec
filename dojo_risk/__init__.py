"""Dojo Risk Core - risk and strategy lifecycle engine for systematic trading."""

__version__ = "1.0.0"
