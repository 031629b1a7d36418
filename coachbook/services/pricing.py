from collections.abc import Mapping, Sequence

from coachbook.config import settings
from coachbook.errors import PricingError
from coachbook.models.schemas import Coach, CoachCategory, Session


def default_category_prices() -> dict[CoachCategory, int]:
    return {
        CoachCategory.GENERAL_ACCESS: settings.general_access_price,
        CoachCategory.SELF_SCHEDULED: settings.self_scheduled_price,
    }


class PricingPolicy:
    """
    Per-session prices keyed by coach category.

    Prices are whole currency units, so totals need no rounding.
    """

    def __init__(self, prices: Mapping[CoachCategory, int] | None = None) -> None:
        self._prices = dict(prices) if prices is not None else default_category_prices()

    def price_per_session(self, coach: Coach) -> int:
        price = self._prices.get(coach.category)
        if price is None:
            raise PricingError(f"No session price configured for category {coach.category.value}.")
        return price

    def total_price(self, sessions: Sequence[Session], coach: Coach) -> int:
        return len(sessions) * self.price_per_session(coach)


pricing_policy = PricingPolicy()
