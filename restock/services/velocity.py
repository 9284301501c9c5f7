"""
Velocity & Demand Projection

Trailing-window moving average only:
  daily_velocity          = sales_in_window / window_days
  projected_window_demand = daily_velocity * projection_horizon_days
  days_of_supply          = current_stock / daily_velocity

Zero velocity means "no demand": days_of_supply takes the capped sentinel
and no_demand is set. Finite values are capped at the same sentinel, so an
IEEE infinity never reaches the classifier, the ranking or the CSV.
"""
from dataclasses import dataclass

from restock.services.errors import ConfigurationError, VariantDataError

DEFAULT_NO_DEMAND_DAYS = 9999.0


@dataclass(frozen=True)
class VelocityProjection:
    daily_velocity: float
    projected_window_demand: float
    days_of_supply: float
    no_demand: bool


def require_positive_days(value, name: str) -> int:
    """Window/horizon lengths are configuration; anything not > 0 fails the run."""
    if value is None or isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    if days != value or days <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    return days


def project(
    sales_in_window: float,
    current_stock: float,
    window_days: int,
    projection_horizon_days: int,
    no_demand_days: float = DEFAULT_NO_DEMAND_DAYS,
) -> VelocityProjection:
    window_days = require_positive_days(window_days, "window_days")
    projection_horizon_days = require_positive_days(projection_horizon_days, "projection_horizon_days")

    if sales_in_window is None or sales_in_window < 0:
        raise VariantDataError(f"sales_in_window must be >= 0, got {sales_in_window!r}")

    daily_velocity = float(sales_in_window) / window_days
    projected = daily_velocity * projection_horizon_days

    if daily_velocity == 0:
        return VelocityProjection(
            daily_velocity=0.0,
            projected_window_demand=0.0,
            days_of_supply=float(no_demand_days),
            no_demand=True,
        )

    days_of_supply = min(float(current_stock) / daily_velocity, float(no_demand_days))
    return VelocityProjection(
        daily_velocity=daily_velocity,
        projected_window_demand=projected,
        days_of_supply=days_of_supply,
        no_demand=False,
    )
