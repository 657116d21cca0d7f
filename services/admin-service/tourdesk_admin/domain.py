from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Literal, TypeVar

from .errors import InvalidRuleSet, ValidationError

Initiator = Literal["CUSTOMER", "OPERATOR", "ADMIN"]
Season = Literal["PEAK", "OFF", "NORMAL"]

PAID_STATUSES = frozenset({"SUCCESS", "CONFIRMED"})

_CENT = Decimal("0.01")
_ZERO = Decimal(0)
_HUNDRED = Decimal(100)

T = TypeVar("T")


def dec(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    if x is None:
        return _ZERO
    # str() first so 1.3 stays 1.3 and not its binary approximation
    return Decimal(str(x))


def money(x: Decimal) -> Decimal:
    return x.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CancellationTier:
    days_before_start: int
    refund_percentage: Decimal
    description: str = ""


DEFAULT_CANCELLATION_TIERS: tuple[CancellationTier, ...] = (
    CancellationTier(30, Decimal(100), "30+ days: Full refund"),
    CancellationTier(14, Decimal(75), "14-29 days: 75% refund"),
    CancellationTier(7, Decimal(50), "7-13 days: 50% refund"),
    CancellationTier(3, Decimal(25), "3-6 days: 25% refund"),
    CancellationTier(0, Decimal(0), "0-2 days: No refund"),
)


@dataclass(frozen=True)
class CancellationRuleSet:
    """
    Admin-editable refund policy.

    Tiers are keyed by days-before-start; a cancellation matches the tier with
    the highest threshold that is still <= the actual notice given. A tier at
    0 days is mandatory so that every cancellation matches something.
    """

    tiers: tuple[CancellationTier, ...] = DEFAULT_CANCELLATION_TIERS
    processing_fee_percent: Decimal = Decimal(5)
    emergency_refund_percentage: Decimal = Decimal(100)
    operator_cancelled_full_refund: bool = True
    enabled: bool = True


@dataclass(frozen=True)
class GroupDiscountTier:
    min_people: int
    discount_percentage: Decimal


DEFAULT_GROUP_TIERS: tuple[GroupDiscountTier, ...] = (
    GroupDiscountTier(5, Decimal(5)),
    GroupDiscountTier(10, Decimal(10)),
    GroupDiscountTier(15, Decimal(15)),
)


@dataclass(frozen=True)
class CommissionRuleSet:
    operator_commission_percent: Decimal = Decimal(15)
    admin_commission_percent: Decimal = Decimal(10)
    early_bird_enabled: bool = True
    early_bird_days: int = 60
    early_bird_percentage: Decimal = Decimal(10)
    group_discount_enabled: bool = True
    group_tiers: tuple[GroupDiscountTier, ...] = DEFAULT_GROUP_TIERS
    seasonal_pricing_enabled: bool = True
    peak_multiplier: Decimal = Decimal("1.3")
    off_multiplier: Decimal = Decimal("0.8")


@dataclass(frozen=True)
class RefundResolution:
    total_paid: Decimal
    days_before_start: int
    percentage: Decimal
    gross: Decimal
    fee: Decimal
    net: Decimal
    tier_description: str


@dataclass(frozen=True)
class PriceLine:
    code: str
    description: str
    amount: Decimal


@dataclass(frozen=True)
class CommissionSplit:
    operator_commission: Decimal
    admin_commission: Decimal
    operator_payout: Decimal


@dataclass(frozen=True)
class PriceQuote:
    base_price: Decimal
    final_price: Decimal
    lines: list[PriceLine]
    commission: CommissionSplit


def select_floor_tier(tiers: Iterable[T], value, key: Callable[[T], int]) -> T | None:
    """Highest-qualifying-floor selection: the tier with the largest threshold <= value."""
    for tier in sorted(tiers, key=key, reverse=True):
        if key(tier) <= value:
            return tier
    return None


def _pct_ok(x) -> bool:
    return _ZERO <= dec(x) <= _HUNDRED


def validate_cancellation_rules(rules: CancellationRuleSet) -> None:
    errors: dict[str, str] = {}
    for i, tier in enumerate(rules.tiers):
        if not _pct_ok(tier.refund_percentage):
            errors[f"rule_{i}"] = "Refund percentage must be between 0 and 100"
        if int(tier.days_before_start) < 0:
            errors[f"days_{i}"] = "Days must be 0 or positive"

    if not _pct_ok(rules.processing_fee_percent):
        errors["processing_fee"] = "Processing fee must be between 0 and 100"
    if not _pct_ok(rules.emergency_refund_percentage):
        errors["emergency_refund"] = "Emergency refund must be between 0 and 100"

    if not any(int(t.days_before_start) == 0 for t in rules.tiers):
        errors["floor"] = "A tier with 0 days before start is required"

    if errors:
        raise InvalidRuleSet("Invalid cancellation rules", errors)


def validate_commission_rules(rules: CommissionRuleSet) -> None:
    errors: dict[str, str] = {}

    if not _pct_ok(rules.operator_commission_percent):
        errors["operator_commission"] = "Operator commission must be between 0 and 100"
    if not _pct_ok(rules.admin_commission_percent):
        errors["admin_commission"] = "Admin commission must be between 0 and 100"
    if dec(rules.operator_commission_percent) + dec(rules.admin_commission_percent) > _HUNDRED:
        errors["total_commission"] = "Total commission cannot exceed 100%"

    if not _pct_ok(rules.early_bird_percentage):
        errors["early_bird_percentage"] = "Early bird discount must be between 0 and 100"
    if int(rules.early_bird_days) < 0:
        errors["early_bird_days"] = "Early bird days must be 0 or positive"

    for i, tier in enumerate(rules.group_tiers):
        if not _pct_ok(tier.discount_percentage):
            errors[f"group_discount_{i}"] = "Group discount must be between 0 and 100"
        if int(tier.min_people) < 1:
            errors[f"group_people_{i}"] = "Minimum people must be at least 1"

    if dec(rules.peak_multiplier) < 1:
        errors["peak_multiplier"] = "Peak season multiplier must be at least 1.0"
    if not (Decimal("0.1") <= dec(rules.off_multiplier) <= 1):
        errors["off_multiplier"] = "Off-season multiplier must be between 0.1 and 1.0"

    if errors:
        raise ValidationError("Invalid commission rules", errors)


def _as_utc(x: date | datetime) -> datetime:
    if not isinstance(x, datetime):
        return datetime(x.year, x.month, x.day, tzinfo=timezone.utc)
    if x.tzinfo is None:
        return x.replace(tzinfo=timezone.utc)
    return x


def days_before_start(start: date | datetime, cancelled_at: date | datetime) -> int:
    """Whole days of notice; a started part-day counts as a day. Never negative."""
    seconds = (_as_utc(start) - _as_utc(cancelled_at)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def total_paid(payments: Iterable[dict] | None) -> Decimal:
    total = _ZERO
    for p in payments or []:
        if str(p.get("status") or "").upper() in PAID_STATUSES:
            total += dec(p.get("amount") or 0)
    return total


def resolve_refund(
    total_paid: Decimal | int | float,
    days_before_start: int,
    initiator: Initiator,
    rules: CancellationRuleSet,
    emergency: bool = False,
) -> RefundResolution:
    """
    Refund owed for a cancellation.

    - operator/admin cancellations get 100% (no fee) when the rule set says so
    - otherwise the highest qualifying tier applies, then the processing fee
    - an emergency override swaps in the emergency percentage and waives the fee

    The rule set is expected to be validated already; a missing floor tier is
    still reported as InvalidRuleSet instead of silently refunding nothing.
    """
    paid = max(dec(total_paid), _ZERO)
    days = max(int(days_before_start), 0)
    fee_pct = dec(rules.processing_fee_percent)

    if initiator != "CUSTOMER" and rules.operator_cancelled_full_refund:
        pct = _HUNDRED
        fee_pct = _ZERO
        description = "Cancelled by operator: full refund"
    else:
        tier = select_floor_tier(rules.tiers, days, key=lambda t: int(t.days_before_start))
        if tier is None:
            raise InvalidRuleSet("No tier matches", {"floor": "A tier with 0 days before start is required"})
        pct = dec(tier.refund_percentage)
        description = tier.description or f"{tier.days_before_start}+ days: {pct}% refund"
        if emergency:
            pct = dec(rules.emergency_refund_percentage)
            fee_pct = _ZERO
            description = f"Emergency override: {pct}% refund (tier: {description})"

    gross = money(paid * pct / _HUNDRED)
    fee = money(gross * fee_pct / _HUNDRED)
    net = min(max(gross - fee, _ZERO), paid)

    return RefundResolution(
        total_paid=paid,
        days_before_start=days,
        percentage=pct,
        gross=gross,
        fee=fee,
        net=net,
        tier_description=description,
    )


def commission_split(amount: Decimal, rules: CommissionRuleSet) -> CommissionSplit:
    amount = dec(amount)
    operator = money(amount * dec(rules.operator_commission_percent) / _HUNDRED)
    admin = money(amount * dec(rules.admin_commission_percent) / _HUNDRED)
    return CommissionSplit(
        operator_commission=operator,
        admin_commission=admin,
        operator_payout=max(money(amount) - operator - admin, _ZERO),
    )


def compute_final_price(
    base_price: Decimal | int | float,
    days_before_departure: int,
    party_size: int,
    season: Season,
    rules: CommissionRuleSet,
) -> PriceQuote:
    base = dec(base_price)
    if base < 0:
        raise ValueError("base_price must be >= 0")
    if party_size < 1:
        raise ValueError("At least one traveller is required")
    if season not in ("PEAK", "OFF", "NORMAL"):
        raise ValueError(f"Unknown season: {season}")

    running = base
    lines: list[PriceLine] = [PriceLine(code="base", description="Base price", amount=money(base))]

    # Each adjustment compounds on the running total: seasonal -> early bird -> group.
    if rules.seasonal_pricing_enabled and season != "NORMAL":
        mult = dec(rules.peak_multiplier) if season == "PEAK" else dec(rules.off_multiplier)
        adjusted = running * mult
        lines.append(
            PriceLine(
                code=f"season.{season.lower()}",
                description=f"{'Peak' if season == 'PEAK' else 'Off'} season (x{mult})",
                amount=money(adjusted - running),
            )
        )
        running = adjusted

    if rules.early_bird_enabled and days_before_departure >= int(rules.early_bird_days):
        pct = dec(rules.early_bird_percentage)
        discount = running * pct / _HUNDRED
        lines.append(
            PriceLine(
                code="discount.early_bird",
                description=f"Early bird {rules.early_bird_days}+ days ({pct}%)",
                amount=-money(discount),
            )
        )
        running -= discount

    if rules.group_discount_enabled:
        tier = select_floor_tier(rules.group_tiers, party_size, key=lambda t: int(t.min_people))
        if tier is not None:
            pct = dec(tier.discount_percentage)
            discount = running * pct / _HUNDRED
            lines.append(
                PriceLine(
                    code="discount.group",
                    description=f"Group of {tier.min_people}+ ({pct}%)",
                    amount=-money(discount),
                )
            )
            running -= discount

    final = money(max(running, _ZERO))
    return PriceQuote(
        base_price=money(base),
        final_price=final,
        lines=lines,
        commission=commission_split(final, rules),
    )
