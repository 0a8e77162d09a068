"""Workflow routing tables and node handlers."""
