"""Shared constants."""

from decimal import Decimal

# Basis points per unit
BPS = Decimal("10000")

SECONDS_PER_HOUR = 3600
