"""Gavel shared package: configuration, database, models and pure services."""
