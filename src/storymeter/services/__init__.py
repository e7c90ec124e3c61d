"""Metering services: tiers, quotas and the usage log."""
