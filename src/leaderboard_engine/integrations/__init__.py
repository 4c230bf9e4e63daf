"""Adapters for external collaborators: calendar, enrollment, webhooks."""
