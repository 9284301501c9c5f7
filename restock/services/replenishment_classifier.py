"""
Replenishment Classifier

Turns a velocity projection plus stock state into:
  - urgency tier (ordered decision list, first match wins)
  - confidence label (reliability of the velocity estimate only)
  - suggested reorder quantity
  - a human-readable reason

Urgency and confidence are computed from disjoint inputs. A variant can be
"critical" with "low" confidence (out of stock, barely any order history);
the reason string then says so.
"""
import json
import math
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional

from restock.services.errors import ConfigurationError
from restock.services.velocity import VelocityProjection

URGENCY_CRITICAL = "critical"
URGENCY_HIGH = "high"
URGENCY_MEDIUM = "medium"
URGENCY_LOW = "low"

# Ranking order, most urgent first
URGENCY_ORDER = (URGENCY_CRITICAL, URGENCY_HIGH, URGENCY_MEDIUM, URGENCY_LOW)
_URGENCY_RANK = {u: i for i, u in enumerate(URGENCY_ORDER)}

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"


def urgency_rank(urgency: str) -> int:
    """0 for critical ... 3 for low; unknown tiers sort last."""
    return _URGENCY_RANK.get(urgency, len(URGENCY_ORDER))


@dataclass(frozen=True)
class ReplenishmentPolicy:
    """Tunable thresholds. Defaults come from Settings; tenants may override."""
    critical_days_threshold: float = 7
    high_days_threshold: float = 14
    medium_days_threshold: float = 30
    min_order_sample: int = 3
    safety_stock_factor: float = 0.20
    no_demand_days_of_supply: float = 9999.0

    def __post_init__(self):
        if not (0 < self.critical_days_threshold < self.high_days_threshold < self.medium_days_threshold):
            raise ConfigurationError(
                "Urgency thresholds must satisfy 0 < critical < high < medium, got "
                f"{self.critical_days_threshold}/{self.high_days_threshold}/{self.medium_days_threshold}"
            )
        if self.no_demand_days_of_supply <= self.medium_days_threshold:
            raise ConfigurationError("no_demand_days_of_supply must exceed medium_days_threshold")
        if not (0 <= self.safety_stock_factor <= 1):
            raise ConfigurationError(f"safety_stock_factor must be within [0, 1], got {self.safety_stock_factor}")
        if self.min_order_sample < 1:
            raise ConfigurationError(f"min_order_sample must be >= 1, got {self.min_order_sample}")

    @classmethod
    def from_settings(cls, settings) -> "ReplenishmentPolicy":
        return cls(
            critical_days_threshold=settings.critical_days_threshold,
            high_days_threshold=settings.high_days_threshold,
            medium_days_threshold=settings.medium_days_threshold,
            min_order_sample=settings.min_order_sample,
            safety_stock_factor=settings.safety_stock_factor,
            no_demand_days_of_supply=settings.no_demand_days_of_supply,
        )

    @classmethod
    def for_tenant(cls, tenant_id: str, settings) -> "ReplenishmentPolicy":
        """Defaults from settings, with the tenant's entry of replenishment_policy_overrides merged over them."""
        base = cls.from_settings(settings)
        overrides = _parse_overrides(settings.replenishment_policy_overrides).get(tenant_id)
        if not overrides:
            return base
        allowed = {f.name for f in fields(cls)}
        unknown = set(overrides) - allowed
        if unknown:
            raise ConfigurationError(f"Unknown policy keys for tenant {tenant_id}: {sorted(unknown)}")
        return replace(base, **overrides)


def _parse_overrides(raw: str) -> Dict[str, Dict[str, Any]]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"replenishment_policy_overrides is not valid JSON: {e}")
    if not isinstance(parsed, dict) or not all(isinstance(v, dict) for v in parsed.values()):
        raise ConfigurationError("replenishment_policy_overrides must map tenant ids to objects")
    return parsed


@dataclass(frozen=True)
class Classification:
    urgency: str
    confidence: str
    suggested_quantity: int
    reason: str


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def classify_urgency(projection: VelocityProjection, current_stock: int, policy: ReplenishmentPolicy) -> str:
    if projection.daily_velocity > 0 and current_stock <= 0:
        return URGENCY_CRITICAL
    if projection.no_demand:
        return URGENCY_LOW
    dos = projection.days_of_supply
    if dos < policy.critical_days_threshold:
        return URGENCY_CRITICAL
    if dos < policy.high_days_threshold:
        return URGENCY_HIGH
    if dos < policy.medium_days_threshold:
        return URGENCY_MEDIUM
    return URGENCY_LOW


def classify_confidence(orders_in_window: int, window_days: int, projection_horizon_days: int,
                        policy: ReplenishmentPolicy) -> str:
    if orders_in_window < policy.min_order_sample:
        return CONFIDENCE_LOW
    if projection_horizon_days > window_days:
        return CONFIDENCE_MEDIUM
    return CONFIDENCE_HIGH


def suggest_quantity(projection: VelocityProjection, current_stock: int, pending_production: int,
                     policy: ReplenishmentPolicy) -> int:
    # Never suggest reordering dead stock, even if upstream stock is negative
    if projection.no_demand:
        return 0
    target = projection.projected_window_demand * (1 + policy.safety_stock_factor)
    return max(0, _round_half_up(target - current_stock - pending_production))


def _build_reason(urgency: str, confidence: str, projection: VelocityProjection, current_stock: int,
                  pending_production: int, orders_in_window: int, window_days: int,
                  projection_horizon_days: int, policy: ReplenishmentPolicy) -> str:
    velocity = projection.daily_velocity
    depleted = velocity > 0 and current_stock <= 0

    if depleted and confidence == CONFIDENCE_LOW:
        parts = [
            f"Stock depleted but only {orders_in_window} orders observed in window "
            f"({velocity:.2f} units/day); restock cautiously with a smaller batch"
        ]
    elif depleted:
        parts = [f"Stock depleted while selling {velocity:.2f} units/day"]
    elif projection.no_demand:
        parts = [f"No sales in the last {window_days} days; no restock needed"]
    elif urgency == URGENCY_CRITICAL:
        parts = [
            f"Only {projection.days_of_supply:.1f} days of supply left at {velocity:.2f} units/day "
            f"(critical below {policy.critical_days_threshold:g} days)"
        ]
    elif urgency == URGENCY_HIGH:
        parts = [f"{projection.days_of_supply:.1f} days of supply, below the {policy.high_days_threshold:g}-day threshold"]
    elif urgency == URGENCY_MEDIUM:
        parts = [f"{projection.days_of_supply:.1f} days of supply, below the {policy.medium_days_threshold:g}-day threshold"]
    else:
        parts = [f"{projection.days_of_supply:.1f} days of supply at {velocity:.2f} units/day"]

    if pending_production > 0:
        parts.append(f"{pending_production} units already in production")

    if confidence == CONFIDENCE_LOW and not depleted and not projection.no_demand:
        parts.append(f"low confidence: only {orders_in_window} orders observed in window")
    elif confidence == CONFIDENCE_MEDIUM:
        parts.append(
            f"medium confidence: {window_days}-day sales window is shorter than the "
            f"{projection_horizon_days}-day projection"
        )

    return "; ".join(parts)


def classify(
    projection: VelocityProjection,
    current_stock: int,
    pending_production: int,
    orders_in_window: int,
    window_days: int,
    projection_horizon_days: int,
    policy: Optional[ReplenishmentPolicy] = None,
) -> Classification:
    policy = policy or ReplenishmentPolicy()

    urgency = classify_urgency(projection, current_stock, policy)
    confidence = classify_confidence(orders_in_window, window_days, projection_horizon_days, policy)
    quantity = suggest_quantity(projection, current_stock, pending_production, policy)
    reason = _build_reason(
        urgency, confidence, projection, current_stock, pending_production,
        orders_in_window, window_days, projection_horizon_days, policy,
    )
    return Classification(
        urgency=urgency,
        confidence=confidence,
        suggested_quantity=quantity,
        reason=reason,
    )
