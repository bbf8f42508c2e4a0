"""
Pricing Helpers

VAT for EU customers and conversion to a provider's settlement currency.
VAT is always applied to the original amount before conversion.
"""
import random
import string
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

EU_COUNTRIES = frozenset({
    "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR",
    "DE", "GR", "HU", "IE", "IT", "LV", "LT", "LU", "MT", "NL",
    "PL", "PT", "RO", "SK", "SI", "ES", "SE",
})

VAT_RATES: Dict[str, Decimal] = {
    "DE": Decimal("0.19"), "FR": Decimal("0.20"), "IT": Decimal("0.22"), "ES": Decimal("0.21"),
    "NL": Decimal("0.21"), "BE": Decimal("0.21"), "AT": Decimal("0.20"), "SE": Decimal("0.25"),
    "DK": Decimal("0.25"), "FI": Decimal("0.24"), "PL": Decimal("0.23"), "CZ": Decimal("0.21"),
    "HU": Decimal("0.27"), "SK": Decimal("0.20"), "SI": Decimal("0.22"), "EE": Decimal("0.20"),
    "LV": Decimal("0.21"), "LT": Decimal("0.21"), "IE": Decimal("0.23"), "LU": Decimal("0.17"),
    "MT": Decimal("0.18"), "CY": Decimal("0.19"), "BG": Decimal("0.20"), "RO": Decimal("0.19"),
    "HR": Decimal("0.25"), "PT": Decimal("0.23"), "GR": Decimal("0.24"),
}
DEFAULT_EU_VAT_RATE = Decimal("0.20")

# Static rates into GEL (UniPay settlement currency)
GEL_RATES: Dict[str, Decimal] = {
    "USD": Decimal("2.65"),
    "EUR": Decimal("2.90"),
    "GBP": Decimal("3.35"),
    "GEL": Decimal("1.00"),
}

CENTS = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def calculate_vat(net_amount: Decimal, country_code: Optional[str]) -> Dict[str, Any]:
    """
    Calculate VAT for a customer country.

    Non-EU (or unknown) countries pay no VAT. EU countries use their
    standard rate, falling back to 20%.

    Returns:
        Dict with net_amount, vat_rate, vat_amount, gross_amount and country
    """
    net = Decimal(net_amount)
    country = (country_code or "").upper()

    if country not in EU_COUNTRIES:
        return {
            "net_amount": net,
            "vat_rate": Decimal("0"),
            "vat_amount": Decimal("0"),
            "gross_amount": net,
            "country": country or None,
        }

    rate = VAT_RATES.get(country, DEFAULT_EU_VAT_RATE)
    vat_amount = quantize_money(net * rate)
    return {
        "net_amount": net,
        "vat_rate": rate,
        "vat_amount": vat_amount,
        "gross_amount": net + vat_amount,
        "country": country,
    }


def convert_currency_to_gel(amount: Decimal, from_currency: str) -> Dict[str, Any]:
    """Convert an amount into GEL using the static rate table (unknown currency: 1)."""
    currency = (from_currency or "USD").upper()
    rate = GEL_RATES.get(currency, Decimal("1"))
    return {
        "original_amount": Decimal(amount),
        "original_currency": currency,
        "converted_amount": quantize_money(Decimal(amount) * rate),
        "currency": "GEL",
        "conversion_rate": rate,
    }


def generate_merchant_order_id() -> str:
    """ORDER-<epoch ms>-<6 upper alphanumerics>"""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"ORDER-{int(time.time() * 1000)}-{suffix}"


def to_json_safe(info: Dict[str, Any]) -> Dict[str, Any]:
    """Render Decimal values as strings for JSON columns."""
    return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in info.items()}
