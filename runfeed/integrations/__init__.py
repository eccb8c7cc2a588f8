"""Relay-facing integrations."""
