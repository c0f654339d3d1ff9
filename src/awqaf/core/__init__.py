"""Shared infrastructure: config, exceptions, logging, events, CLI."""
