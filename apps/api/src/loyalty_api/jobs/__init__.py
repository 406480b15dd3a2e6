"""Recurring job entrypoints for the loyalty service."""

__all__ = ["loyalty"]
