"""Price catalog — the allow-list of purchasable Stripe prices."""

from dataclasses import dataclass

from subsync.config import settings


@dataclass(frozen=True)
class PriceOption:
    """A Stripe price that users are allowed to buy."""

    price_id: str
    display_name: str
    one_time: bool  # True = checkout in "payment" mode, False = "subscription"


def get_price_catalog() -> dict[str, PriceOption]:
    """Build the catalog from current settings, skipping unset price IDs."""
    named = [
        (settings.stripe_price_id_one_time, "One-Time Match", True),
        (settings.stripe_price_id_monthly, "Monthly Membership", False),
        (settings.stripe_price_id_three_month, "3-Month Membership", False),
        (settings.stripe_price_id_six_month, "6-Month Membership", False),
    ]
    named += [(pid, "Membership", False) for pid in settings.stripe_extra_price_ids]
    named += [(pid, "One-Time Purchase", True) for pid in settings.stripe_extra_one_time_price_ids]

    catalog: dict[str, PriceOption] = {}
    for price_id, display_name, one_time in named:
        if price_id and price_id not in catalog:
            catalog[price_id] = PriceOption(
                price_id=price_id,
                display_name=display_name,
                one_time=one_time,
            )
    return catalog


def get_price(price_id: str | None) -> PriceOption | None:
    """Look up an allow-listed price. Returns None if not purchasable."""
    if not price_id:
        return None
    return get_price_catalog().get(price_id)


def plan_display_name(price_id: str | None, nickname: str | None = None) -> str | None:
    """Human name for a price: catalog name, then Stripe nickname."""
    option = get_price(price_id)
    if option is not None:
        return option.display_name
    return nickname
