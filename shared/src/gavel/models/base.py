"""Declarative base for all ORM models."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def sql_in_list(values: Iterable[str]) -> str:
    """Render a CHECK-constraint value list, e.g. ``'sold','no_bids'``."""
    return ",".join(f"'{value}'" for value in values)
