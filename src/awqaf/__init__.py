"""Awqaf — endowment allocation and tranche lifecycle engine."""

__version__ = "0.1.0"
