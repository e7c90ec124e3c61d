"""API routes."""

from storymeter.routes import ai, subscription, usage, webhooks

__all__ = ["ai", "subscription", "usage", "webhooks"]
