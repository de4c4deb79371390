"""Shared auction services."""
