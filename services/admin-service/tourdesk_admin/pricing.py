from __future__ import annotations

from decimal import Decimal

from . import domain
from .security import Session
from .system_settings import SettingsService


class PricingService:
    """Final price for a booking under the currently saved commission rules."""

    def __init__(self, settings: SettingsService):
        self.settings = settings

    async def quote(
        self,
        session: Session,
        base_price: Decimal,
        days_before_departure: int,
        party_size: int,
        season: domain.Season = "NORMAL",
    ) -> domain.PriceQuote:
        rules = (await self.settings.load(session)).commission
        return domain.compute_final_price(base_price, days_before_departure, party_size, season, rules)
