from decimal import Decimal

from settlement_engine import compute_settlement

PCT_10 = {"commission_type": "percentage", "commission_rate": Decimal("10")}


def _assert_conserved(result):
    total = result["seller_amount"] + result["affiliate_amount"] + result["platform_fee"]
    assert total == result["amount"]  # conservation invariant


def test_end_to_end_example_with_affiliate():
    """
    price 100, 10% percentage commission, seller plan fee 5%, affiliate present.
    """
    result = compute_settlement(Decimal("100"), PCT_10, Decimal("5"), has_affiliate=True)

    assert result["raw_commission"] == Decimal("10")
    assert result["affiliate_amount"] == Decimal("9.60")
    assert result["seller_amount_before_fee"] == Decimal("90.40")
    assert result["platform_fee"] == Decimal("4.52")
    assert result["seller_amount"] == Decimal("85.88")
    _assert_conserved(result)


def test_no_affiliate_fee_on_full_amount():
    result = compute_settlement(Decimal("100"), PCT_10, Decimal("6"), has_affiliate=False)

    assert result["affiliate_amount"] == Decimal("0.00")
    assert result["platform_fee"] == Decimal("6.00")
    assert result["seller_amount"] == Decimal("94.00")
    _assert_conserved(result)


def test_platform_fee_only_on_seller_share():
    """
    the fee applies to sellerAmountBeforeFee, never to the gross amount.
    """
    result = compute_settlement(Decimal("200"), PCT_10, Decimal("10"), has_affiliate=True)

    # affiliate: 20 * 0.96 = 19.20; seller before fee: 180.80; fee 10% = 18.08
    assert result["affiliate_amount"] == Decimal("19.20")
    assert result["platform_fee"] == Decimal("18.08")
    assert result["platform_fee"] != Decimal("20.00")
    _assert_conserved(result)


def test_rounding_only_on_persisted_fields():
    """
    33.33 with 7% commission and 3% fee produces sub-cent intermediates;
    the sum still equals the amount exactly.
    """
    product = {"commission_type": "percentage", "commission_rate": Decimal("7")}
    result = compute_settlement(Decimal("33.33"), product, Decimal("3"), has_affiliate=True)

    # raw 2.3331 -> 2.239776 -> 2.24
    assert result["affiliate_amount"] == Decimal("2.24")
    # (33.33 - 2.239776) * 3% = 0.93271... -> 0.93
    assert result["platform_fee"] == Decimal("0.93")
    assert result["seller_amount"] == Decimal("30.16")
    _assert_conserved(result)


def test_conservation_across_many_prices():
    product = {"commission_type": "percentage", "commission_rate": Decimal("13.5")}
    for cents in (1, 3, 99, 101, 1999, 4990, 12345, 99999):
        amount = Decimal(cents) / Decimal("100")
        for fee in (Decimal("2"), Decimal("4"), Decimal("6")):
            for has_affiliate in (True, False):
                result = compute_settlement(amount, product, fee, has_affiliate)
                _assert_conserved(result)
                assert result["seller_amount"] >= 0
                assert result["platform_fee"] >= 0
                assert result["affiliate_amount"] <= result["amount"]


def test_fixed_commission_larger_than_amount():
    """
    a 50 fixed commission on a 10 sale gives the affiliate everything.
    """
    product = {"commission_type": "fixed", "commission_rate": Decimal("50")}
    result = compute_settlement(Decimal("10"), product, Decimal("5"), has_affiliate=True)

    assert result["affiliate_amount"] == Decimal("10.00")
    assert result["platform_fee"] == Decimal("0.00")
    assert result["seller_amount"] == Decimal("0.00")
    _assert_conserved(result)


def test_free_sale_settles_to_zero():
    result = compute_settlement(Decimal("0"), PCT_10, Decimal("6"), has_affiliate=True)

    assert result["amount"] == Decimal("0.00")
    assert result["seller_amount"] == Decimal("0.00")
    _assert_conserved(result)
