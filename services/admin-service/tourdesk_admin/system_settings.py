from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from . import domain
from .backend import BackendClient, Session
from .errors import ValidationError
from .permissions import PermissionMatrix, validate_permissions


@dataclass(frozen=True)
class SystemSettings:
    cancellation: domain.CancellationRuleSet = field(default_factory=domain.CancellationRuleSet)
    commission: domain.CommissionRuleSet = field(default_factory=domain.CommissionRuleSet)
    permissions: PermissionMatrix = field(default_factory=PermissionMatrix.defaults)


def _num(raw: dict, key: str, default: Any, errors: dict[str, str], err_key: str | None = None) -> Decimal:
    value = raw.get(key, default)
    try:
        d = domain.dec(value)
    except (InvalidOperation, TypeError, ValueError):
        d = None
    if d is None or isinstance(value, bool) or not d.is_finite():
        errors[err_key or key] = "Must be a number"
        return domain.dec(default)
    return d


def _int(raw: dict, key: str, default: int, errors: dict[str, str], err_key: str | None = None) -> int:
    d = _num(raw, key, default, errors, err_key)
    if d != d.to_integral_value():
        errors[err_key or key] = "Must be a whole number"
    return int(d)


def _flag(raw: dict, key: str, default: bool, errors: dict[str, str], err_key: str | None = None) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        errors[err_key or key] = "Must be true or false"
        return default
    return value


def _out(d: Decimal) -> int | float:
    return int(d) if d == d.to_integral_value() else float(d)


def parse_cancellation(raw: dict | None, errors: dict[str, str]) -> domain.CancellationRuleSet:
    if not raw:
        return domain.CancellationRuleSet()
    base = domain.CancellationRuleSet()
    tiers = []
    for i, r in enumerate(raw.get("rules") or []):
        tiers.append(
            domain.CancellationTier(
                days_before_start=_int(r, "daysBeforeStart", 0, errors, f"days_{i}"),
                refund_percentage=_num(r, "refundPercentage", 0, errors, f"rule_{i}"),
                description=str(r.get("description") or ""),
            )
        )
    # the backend stores the fee as "processingFee"; accept the explicit name too
    fee_key = "processingFeePercent" if "processingFeePercent" in raw else "processingFee"
    return domain.CancellationRuleSet(
        tiers=tuple(tiers) if "rules" in raw else base.tiers,
        processing_fee_percent=_num(raw, fee_key, base.processing_fee_percent, errors, "processing_fee"),
        emergency_refund_percentage=_num(raw, "emergencyRefundPercentage", base.emergency_refund_percentage, errors, "emergency_refund"),
        operator_cancelled_full_refund=_flag(raw, "operatorCancelledFullRefund", base.operator_cancelled_full_refund, errors),
        enabled=_flag(raw, "enabled", base.enabled, errors, "cancellation_enabled"),
    )


def parse_commission(raw: dict | None, errors: dict[str, str]) -> domain.CommissionRuleSet:
    if not raw:
        return domain.CommissionRuleSet()
    base = domain.CommissionRuleSet()
    group_tiers = tuple(
        domain.GroupDiscountTier(
            min_people=_int(r, "minPeople", 1, errors, f"group_people_{i}"),
            discount_percentage=_num(r, "discountPercentage", 0, errors, f"group_discount_{i}"),
        )
        for i, r in enumerate(raw.get("groupDiscountRules") or [])
    )
    return domain.CommissionRuleSet(
        operator_commission_percent=_num(raw, "defaultOperatorCommission", base.operator_commission_percent, errors, "operator_commission"),
        admin_commission_percent=_num(raw, "defaultAdminCommission", base.admin_commission_percent, errors, "admin_commission"),
        early_bird_enabled=_flag(raw, "earlyBirdDiscountEnabled", base.early_bird_enabled, errors),
        early_bird_days=_int(raw, "earlyBirdDays", base.early_bird_days, errors, "early_bird_days"),
        early_bird_percentage=_num(raw, "earlyBirdPercentage", base.early_bird_percentage, errors, "early_bird_percentage"),
        group_discount_enabled=_flag(raw, "groupDiscountEnabled", base.group_discount_enabled, errors),
        group_tiers=group_tiers if "groupDiscountRules" in raw else base.group_tiers,
        seasonal_pricing_enabled=_flag(raw, "seasonalPricingEnabled", base.seasonal_pricing_enabled, errors),
        peak_multiplier=_num(raw, "peakSeasonMultiplier", base.peak_multiplier, errors, "peak_multiplier"),
        off_multiplier=_num(raw, "offSeasonMultiplier", base.off_multiplier, errors, "off_multiplier"),
    )


def parse_settings(doc: dict | None) -> SystemSettings:
    """Backend JSON -> SystemSettings. Missing sections fall back to defaults."""
    doc = doc or {}
    errors: dict[str, str] = {}
    cancellation = parse_cancellation(doc.get("cancellationRules"), errors)
    commission = parse_commission(doc.get("commissionRules"), errors)
    try:
        validate_permissions(doc.get("permissions"))
    except ValidationError as e:
        errors.update(e.errors)
    if errors:
        raise ValidationError("Invalid settings", errors)
    return SystemSettings(
        cancellation=cancellation,
        commission=commission,
        permissions=PermissionMatrix.from_document(doc.get("permissions")),
    )


def dump_settings(settings: SystemSettings) -> dict:
    c = settings.cancellation
    m = settings.commission
    return {
        "cancellationRules": {
            "enabled": c.enabled,
            "rules": [
                {
                    "daysBeforeStart": t.days_before_start,
                    "refundPercentage": _out(domain.dec(t.refund_percentage)),
                    "description": t.description,
                }
                for t in c.tiers
            ],
            "operatorCancelledFullRefund": c.operator_cancelled_full_refund,
            "emergencyRefundPercentage": _out(domain.dec(c.emergency_refund_percentage)),
            "processingFee": _out(domain.dec(c.processing_fee_percent)),
        },
        "commissionRules": {
            "defaultOperatorCommission": _out(domain.dec(m.operator_commission_percent)),
            "defaultAdminCommission": _out(domain.dec(m.admin_commission_percent)),
            "earlyBirdDiscountEnabled": m.early_bird_enabled,
            "earlyBirdDays": m.early_bird_days,
            "earlyBirdPercentage": _out(domain.dec(m.early_bird_percentage)),
            "groupDiscountEnabled": m.group_discount_enabled,
            "groupDiscountRules": [
                {"minPeople": t.min_people, "discountPercentage": _out(domain.dec(t.discount_percentage))}
                for t in m.group_tiers
            ],
            "seasonalPricingEnabled": m.seasonal_pricing_enabled,
            "peakSeasonMultiplier": _out(domain.dec(m.peak_multiplier)),
            "offSeasonMultiplier": _out(domain.dec(m.off_multiplier)),
        },
        "permissions": settings.permissions.to_document(),
    }


def validate_settings(settings: SystemSettings) -> None:
    """Validate every section; field errors from all sections are merged."""
    errors: dict[str, str] = {}
    for check, rules in (
        (domain.validate_cancellation_rules, settings.cancellation),
        (domain.validate_commission_rules, settings.commission),
    ):
        try:
            check(rules)
        except ValidationError as e:
            errors.update(e.errors)
    if errors:
        raise ValidationError("Invalid settings", errors)


class SettingsService:
    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def load(self, session: Session) -> SystemSettings:
        return parse_settings(await self.backend.get_settings(session))

    async def save(self, session: Session, doc: dict) -> SystemSettings:
        settings = parse_settings(doc)
        validate_settings(settings)
        await self.backend.save_settings(session, dump_settings(settings))
        return settings

    async def toggle_permission(self, session: Session, role: str, permission: str) -> tuple[SystemSettings, bool]:
        current = await self.load(session)
        matrix, changed = current.permissions.toggle(role, permission)
        if not changed:
            return current, False
        updated = SystemSettings(cancellation=current.cancellation, commission=current.commission, permissions=matrix)
        await self.backend.save_settings(session, dump_settings(updated))
        return updated, True
