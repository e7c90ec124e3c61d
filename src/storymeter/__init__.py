"""Storymeter - usage metering and quota enforcement for AI story generation."""

__version__ = "0.1.0"
