"""Auction engine services."""
