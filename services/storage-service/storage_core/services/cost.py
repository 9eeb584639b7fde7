# services/storage-service/storage_core/services/cost.py
"""Storage cost model"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from ..config import settings

BYTES_PER_GB = Decimal(1024 ** 3)
PENNY = Decimal("0.01")


def calculate_cost(
    size_bytes: int,
    cost_per_gb: Optional[Decimal] = None,
    fx_rate: Optional[Decimal] = None,
    minimum_margin: Optional[Decimal] = None,
) -> Decimal:
    """
    Monthly charge (GBP) for storing `size_bytes`.

    raw = size_gb * backend cost per GB * fx rate, and the charge is raw plus
    the minimum profit margin. An empty object costs exactly the margin.
    Negative sizes raise ValueError.
    """
    if size_bytes < 0:
        raise ValueError(f"size_bytes must be non-negative, got {size_bytes}")

    cost_per_gb = settings.BACKEND_COST_PER_GB if cost_per_gb is None else cost_per_gb
    fx_rate = settings.FX_RATE if fx_rate is None else fx_rate
    minimum_margin = settings.MIN_PROFIT_MARGIN if minimum_margin is None else minimum_margin

    size_gb = Decimal(size_bytes) / BYTES_PER_GB
    monthly_cost = size_gb * cost_per_gb * fx_rate
    return max(monthly_cost + minimum_margin, minimum_margin)


def format_cost(cost: Decimal) -> str:
    """Two-decimal rendering used in object metadata and notifications"""
    return str(cost.quantize(PENNY, rounding=ROUND_HALF_UP))
