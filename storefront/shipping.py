"""
Shipping estimate for the cart and checkout preview.

South India (TIER_1) ships free. Everywhere else ships free at or above
FREE_SHIPPING_THRESHOLD, otherwise LONG_DISTANCE_SHIPPING_FEE applies.
The checkout calculation endpoint has the final word.
"""
import re
from decimal import Decimal
from typing import Union

from storefront.config import Config
from storefront.exceptions import ValidationError
from storefront.models import PINCODE_PATTERN, ShippingQuote, ShippingTier

SHIPPING_RATES = {
    ShippingTier.TIER_1: {
        "label": "FREE Delivery",
        "estimated_days": "3-5 days",
    },
    ShippingTier.TIER_2: {
        "label": "Long Distance Shipping Fee",
        "estimated_days": "5-7 days",
    },
}

# 3-digit prefixes of the free-delivery zone
TIER_1_PREFIXES = frozenset([
    # Tamil Nadu
    "600", "601", "602", "603", "604", "605", "606", "607",
    "608", "609", "610", "611", "612", "613", "614", "615",
    "620", "621", "622", "623", "624", "625", "626", "627", "628", "629",
    "630", "631", "632", "633", "634", "635", "636", "637", "638", "639",
    "641", "642", "643", "644", "645", "646", "647", "648",
    # Karnataka
    "560", "561", "562", "563", "564", "565", "566",
    "570", "571", "572", "573", "574", "575", "576", "577", "578", "579",
    "580", "581", "582", "583", "584", "585", "586", "587", "588", "589",
    "590", "591", "592",
    # Kerala
    "670", "671", "672", "673", "674", "675",
    "676", "677", "678", "679",
    "680", "681", "682", "683", "684", "685", "686",
    "688", "689", "690", "691", "692", "693", "695", "696", "697",
    # Andhra Pradesh and Telangana
    "500", "501", "502", "503", "504", "505", "506", "507", "508", "509",
    "515", "516", "517", "518",
    "520", "521", "522", "523", "524", "525", "526",
    "530", "531", "532", "533", "534", "535",
])


def sanitize_pincode(pincode: str) -> str:
    return re.sub(r"\D", "", pincode or "")


def validate_pincode(pincode: str) -> str:
    """Return the cleaned pincode or raise ValidationError"""
    cleaned = sanitize_pincode(pincode)
    if not cleaned:
        raise ValidationError("Pincode is required", field="pincode")
    if not PINCODE_PATTERN.match(cleaned):
        raise ValidationError(
            "Please enter a valid 6-digit Indian pincode. We currently deliver only within India.",
            field="pincode"
        )
    return cleaned


def get_shipping_tier(pincode: str) -> ShippingTier:
    if len(pincode) < 3:
        return ShippingTier.TIER_2
    return ShippingTier.TIER_1 if pincode[:3] in TIER_1_PREFIXES else ShippingTier.TIER_2


def quote_shipping(pincode: str, subtotal: Union[Decimal, int] = 0) -> ShippingQuote:
    """Shipping estimate for a destination and cart subtotal"""
    cleaned = validate_pincode(pincode)
    tier = get_shipping_tier(cleaned)
    rate = SHIPPING_RATES[tier]

    if tier == ShippingTier.TIER_1 or Decimal(subtotal) >= Config.FREE_SHIPPING_THRESHOLD:
        fee = Decimal("0")
        label = rate["label"] if tier == ShippingTier.TIER_1 else "FREE Delivery (order above threshold)"
    else:
        fee = Config.LONG_DISTANCE_SHIPPING_FEE
        label = rate["label"]

    return ShippingQuote(
        pincode=cleaned,
        tier=tier,
        shipping_fee=fee,
        shipping_label=label,
        estimated_days=rate["estimated_days"]
    )
