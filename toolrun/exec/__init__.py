"""Subprocess execution with streaming output."""
