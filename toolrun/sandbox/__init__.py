"""Sandbox policy and bubblewrap argv construction."""
