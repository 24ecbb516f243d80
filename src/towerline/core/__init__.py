"""Shared primitives: domain models, the event bus, and the scheduler."""
