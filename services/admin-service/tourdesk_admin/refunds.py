from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Literal

from . import domain
from .backend import BackendClient
from .errors import ValidationError
from .security import Session
from .system_settings import SettingsService

logger = logging.getLogger(__name__)

RefundStatus = Literal["PENDING_REFUND", "PARTIAL_REFUND", "REFUNDED"]

CANCELLED_STATUSES = frozenset({"CANCELLED", "REFUNDED"})
DEPARTURE_CANCELLED_REASON = "Departure cancelled by operator"
DEFAULT_REASON = "Customer requested cancellation"


@dataclass(frozen=True)
class RefundRow:
    booking_id: str
    display_id: str
    customer_name: str | None
    customer_email: str | None
    package_title: str | None
    total_paid: Decimal
    total_amount: Decimal
    refund_amount: Decimal
    refunded_so_far: Decimal
    refund_status: RefundStatus
    initiator: Literal["customer", "admin"]
    is_departure_cancelled: bool
    reason: str
    requested_date: datetime | None
    start_date: datetime | None


@dataclass(frozen=True)
class RefundQuote:
    booking_id: str
    initiator: domain.Initiator
    resolution: domain.RefundResolution


def ref_id(x) -> str | None:
    """Populated references arrive as objects, bare ones as id strings."""
    if isinstance(x, dict):
        x = x.get("_id") or x.get("id")
    return str(x) if x else None


def parse_dt(x) -> datetime | None:
    if isinstance(x, datetime):
        return x if x.tzinfo else x.replace(tzinfo=timezone.utc)
    if not x:
        return None
    s = str(x).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def is_cancelled(booking: dict) -> bool:
    status = str(booking.get("status") or "").upper()
    return status in CANCELLED_STATUSES or bool((booking.get("cancellation") or {}).get("isCancelled"))


def is_refund_processed(booking: dict) -> bool:
    return str(booking.get("status") or "").upper() == "REFUNDED" or bool((booking.get("cancellation") or {}).get("refundProcessed"))


def already_refunded(booking: dict) -> Decimal:
    cancellation = booking.get("cancellation") or {}
    if is_refund_processed(booking):
        return domain.dec(cancellation.get("refundAmount") or 0)
    return domain.dec(cancellation.get("refundedAmount") or 0)


def _initiator(booking: dict) -> Literal["customer", "admin"]:
    cancelled_by = ref_id((booking.get("cancellation") or {}).get("cancelledBy"))
    if cancelled_by is None or cancelled_by == ref_id(booking.get("customerId")):
        return "customer"
    return "admin"


def _package_prefix(pkg) -> str:
    pkg = pkg if isinstance(pkg, dict) else {}
    code = pkg.get("packageCode") or pkg.get("code") or pkg.get("shortCode") or pkg.get("packageIdCode")
    if code:
        return str(code).upper()
    title = pkg.get("title")
    if title:
        words = str(title).split()
        first = (words[0] if words else "")[:1] or "X"
        second = (words[1] if len(words) > 1 else (words[0] if words else ""))[:1] or "X"
        return (first + second).upper() + "000"
    return "TB000"


def _display_ids(bookings: list[dict]) -> dict[str, str]:
    """<package prefix><1-based position of the booking within its package, oldest first>."""
    by_package: dict[str, list[dict]] = {}
    for b in bookings:
        pkg_id = ref_id(b.get("packageId"))
        if pkg_id:
            by_package.setdefault(pkg_id, []).append(b)

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    out: dict[str, str] = {}
    for items in by_package.values():
        items.sort(key=lambda b: parse_dt(b.get("createdAt")) or epoch)
        for seq, b in enumerate(items, start=1):
            out[ref_id(b)] = f"{_package_prefix(b.get('packageId'))}{seq}"
    return out


def build_queue(bookings: list[dict], departures: Iterable[dict] = ()) -> list[RefundRow]:
    """Cancelled bookings where money was actually collected, newest request first."""
    cancelled_departures = {
        ref_id(d) for d in departures if str(d.get("status") or "").upper() == "CANCELLED"
    }
    display_ids = _display_ids(bookings)

    rows: list[RefundRow] = []
    for b in bookings:
        if not is_cancelled(b):
            continue
        paid = domain.total_paid(b.get("payments"))
        if paid <= 0:
            continue

        cancellation = b.get("cancellation") or {}
        refund_amount = domain.dec(cancellation.get("refundAmount") or 0)
        processed = is_refund_processed(b)
        refunded_so_far = already_refunded(b)

        status: RefundStatus = "PENDING_REFUND"
        if processed:
            status = "REFUNDED"
        elif 0 < refunded_so_far < refund_amount:
            status = "PARTIAL_REFUND"

        departure_cancelled = ref_id(b.get("groupDepartureId")) in cancelled_departures
        reason = DEPARTURE_CANCELLED_REASON if departure_cancelled else (cancellation.get("reason") or DEFAULT_REASON)

        customer = b.get("customerId") if isinstance(b.get("customerId"), dict) else {}
        pkg = b.get("packageId") if isinstance(b.get("packageId"), dict) else {}
        booking_id = ref_id(b) or ""

        rows.append(
            RefundRow(
                booking_id=booking_id,
                display_id=display_ids.get(booking_id) or f"{_package_prefix(pkg)}1",
                customer_name=customer.get("fullName"),
                customer_email=customer.get("email"),
                package_title=pkg.get("title"),
                total_paid=paid,
                total_amount=domain.dec(b.get("totalAmount") or b.get("finalAmount") or paid),
                refund_amount=refund_amount,
                refunded_so_far=refunded_so_far,
                refund_status=status,
                initiator=_initiator(b),
                is_departure_cancelled=departure_cancelled,
                reason=reason,
                requested_date=parse_dt(cancellation.get("cancelledAt") or b.get("updatedAt")),
                start_date=parse_dt(b.get("startDate")),
            )
        )

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    rows.sort(key=lambda r: r.requested_date or epoch, reverse=True)
    return rows


def filter_queue(
    rows: Iterable[RefundRow],
    search: str = "",
    status: str = "all",
    initiator: str = "all",
    reason: str = "all",
) -> list[RefundRow]:
    term = (search or "").strip().lower()

    def _match(r: RefundRow) -> bool:
        if term and not any(term in (x or "").lower() for x in (r.booking_id, r.display_id, r.customer_name, r.package_title)):
            return False
        if status == "pending" and r.refund_status not in ("PENDING_REFUND", "PARTIAL_REFUND"):
            return False
        if status == "refunded" and r.refund_status != "REFUNDED":
            return False
        if initiator != "all" and r.initiator != initiator:
            return False
        if reason == "departure_cancelled" and not r.is_departure_cancelled:
            return False
        if reason == "customer_request" and r.is_departure_cancelled:
            return False
        return True

    return [r for r in rows if _match(r)]


def queue_totals(rows: Iterable[RefundRow]) -> tuple[Decimal, Decimal]:
    """(still owed, already refunded)"""
    pending = Decimal(0)
    refunded = Decimal(0)
    for r in rows:
        if r.refund_status != "REFUNDED":
            pending += r.refund_amount - r.refunded_so_far
        refunded += r.refunded_so_far
    return pending, refunded


class RefundService:
    def __init__(self, backend: BackendClient, settings: SettingsService):
        self.backend = backend
        self.settings = settings

    async def queue(self, session: Session) -> list[RefundRow]:
        bookings = await self.backend.list_bookings(session)
        departures: list[dict] = []
        if any(b.get("groupDepartureId") for b in bookings):
            departures = await self.backend.list_departures(session)
        return build_queue(bookings, departures)

    async def _departure_cancelled(self, session: Session, booking: dict) -> bool:
        dep_id = ref_id(booking.get("groupDepartureId"))
        if not dep_id:
            return False
        for d in await self.backend.list_departures(session):
            if ref_id(d) == dep_id:
                return str(d.get("status") or "").upper() == "CANCELLED"
        return False

    async def _resolve(self, session: Session, booking: dict, emergency: bool, now: datetime | None) -> RefundQuote:
        booking_id = ref_id(booking) or ""
        start = parse_dt(booking.get("startDate"))
        if start is None:
            raise ValidationError("Booking has no start date", {"startDate": "Missing start date"})

        cancellation = booking.get("cancellation") or {}
        cancelled_at = parse_dt(cancellation.get("cancelledAt")) or now or datetime.now(tz=timezone.utc)

        initiator: domain.Initiator = "CUSTOMER"
        if await self._departure_cancelled(session, booking):
            initiator = "OPERATOR"
        elif _initiator(booking) == "admin":
            initiator = "ADMIN"

        rules = (await self.settings.load(session)).cancellation
        if not rules.enabled and initiator == "CUSTOMER" and not emergency:
            # cancellation refunds switched off: customers are owed nothing
            rules = domain.CancellationRuleSet(
                tiers=(domain.CancellationTier(0, Decimal(0), "Cancellation refunds disabled"),),
                processing_fee_percent=rules.processing_fee_percent,
                emergency_refund_percentage=rules.emergency_refund_percentage,
                operator_cancelled_full_refund=rules.operator_cancelled_full_refund,
            )

        resolution = domain.resolve_refund(
            domain.total_paid(booking.get("payments")),
            domain.days_before_start(start, cancelled_at),
            initiator,
            rules,
            emergency=emergency,
        )
        return RefundQuote(booking_id=booking_id, initiator=initiator, resolution=resolution)

    async def quote(self, session: Session, booking_id: str, emergency: bool = False, now: datetime | None = None) -> RefundQuote:
        booking = await self.backend.get_booking(session, booking_id)
        return await self._resolve(session, booking, emergency, now)

    async def process(
        self,
        session: Session,
        booking_id: str,
        amount: Decimal | None = None,
        emergency: bool = False,
    ) -> tuple[Decimal, dict]:
        booking = await self.backend.get_booking(session, booking_id)
        if not is_cancelled(booking):
            raise ValidationError("Booking is not cancelled", {"status": str(booking.get("status"))})
        if is_refund_processed(booking):
            raise ValidationError("Refund already processed", {"status": "REFUNDED"})

        paid = domain.total_paid(booking.get("payments"))
        remaining = max(domain.money(paid - already_refunded(booking)), Decimal(0))
        if amount is None:
            net = (await self._resolve(session, booking, emergency, None)).resolution.net
            amount = min(net, remaining)
        amount = domain.money(domain.dec(amount))
        if amount < 0 or amount > remaining:
            raise ValidationError("Refund amount out of range", {"amount": f"Must be between 0 and {remaining}"})

        result = await self.backend.execute_refund(session, booking_id, str(amount))
        logger.info("Refund of %s executed for booking %s", amount, booking_id)
        return amount, result
