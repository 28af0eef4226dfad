"""Lifecycle events."""
