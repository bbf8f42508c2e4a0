from decimal import Decimal

import pytest

from marketplace.providers.pricing import (
    calculate_vat,
    convert_currency_to_gel,
    generate_merchant_order_id,
    quantize_money,
    to_json_safe,
)


def test_quantize_money_rounds_half_up():
    assert quantize_money(Decimal("68.8735")) == Decimal("68.87")
    assert quantize_money(Decimal("0.125")) == Decimal("0.13")


def test_vat_for_german_customer():
    vat = calculate_vat(Decimal("25.99"), "de")

    assert vat["country"] == "DE"
    assert vat["vat_rate"] == Decimal("0.19")
    assert vat["vat_amount"] == Decimal("4.94")
    assert vat["gross_amount"] == Decimal("30.93")


@pytest.mark.parametrize("country", ["US", "GE", None, ""])
def test_no_vat_outside_eu(country):
    vat = calculate_vat(Decimal("25.99"), country)

    assert vat["vat_rate"] == Decimal("0")
    assert vat["vat_amount"] == Decimal("0")
    assert vat["gross_amount"] == Decimal("25.99")


def test_gel_conversion_from_usd():
    conversion = convert_currency_to_gel(Decimal("25.99"), "usd")

    assert conversion["converted_amount"] == Decimal("68.87")
    assert conversion["conversion_rate"] == Decimal("2.65")
    assert conversion["currency"] == "GEL"
    assert conversion["original_currency"] == "USD"


def test_gel_conversion_unknown_currency_uses_rate_one():
    conversion = convert_currency_to_gel(Decimal("10"), "JPY")

    assert conversion["converted_amount"] == Decimal("10.00")
    assert conversion["conversion_rate"] == Decimal("1")


def test_merchant_order_id_format():
    merchant_order_id = generate_merchant_order_id()
    prefix, millis, suffix = merchant_order_id.split("-")

    assert prefix == "ORDER"
    assert millis.isdigit()
    assert len(suffix) == 6


def test_to_json_safe_stringifies_decimals():
    assert to_json_safe({"amount": Decimal("1.50"), "country": "DE"}) == {"amount": "1.50", "country": "DE"}
