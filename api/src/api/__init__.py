"""Gavel HTTP API and auction engine services."""
