import unittest
from decimal import Decimal

from fintrack.errors import InvalidAmount, ValidationError
from fintrack.money import (
    effective_rate,
    normalize_amount_for_api,
    normalize_currency,
    parse_amount,
    parse_positive_amount,
    to_major,
    to_minor,
)


class MinorUnitTests(unittest.TestCase):
    def test_dkk_uses_two_decimal_places(self) -> None:
        self.assertEqual(to_minor(Decimal("12.34"), "DKK"), 1234)
        self.assertEqual(to_major(1234, "DKK"), Decimal("12.34"))

    def test_vnd_has_no_minor_unit(self) -> None:
        self.assertEqual(to_minor(Decimal("150000"), "VND"), 150000)
        self.assertEqual(to_major(150000, "VND"), Decimal("150000"))

    def test_rounds_half_away_from_zero(self) -> None:
        self.assertEqual(to_minor(Decimal("12.345"), "DKK"), 1235)
        self.assertEqual(to_minor(Decimal("-1.005"), "DKK"), -101)
        self.assertEqual(to_minor("0.5", "VND"), 1)

    def test_minor_amounts_survive_a_round_trip(self) -> None:
        for currency in ("DKK", "VND"):
            for amount in (0, 1, 99, 100, 123456):
                self.assertEqual(to_minor(to_major(amount, currency), currency), amount)

    def test_currency_codes_are_normalized(self) -> None:
        self.assertEqual(normalize_currency(" dkk "), "DKK")
        with self.assertRaises(ValidationError):
            normalize_currency("EUR")

    def test_amounts_beyond_storage_range_are_rejected(self) -> None:
        for value, currency in (("1e30", "VND"), ("99999999999999999999", "DKK")):
            with self.assertRaises(InvalidAmount):
                to_minor(value, currency)


class AmountParsingTests(unittest.TestCase):
    def test_locale_input_is_canonicalized(self) -> None:
        self.assertEqual(normalize_amount_for_api("1.234,50"), "1234.50")
        self.assertEqual(normalize_amount_for_api("1.000"), "1000")
        self.assertEqual(normalize_amount_for_api(",5"), "0.5")
        self.assertEqual(normalize_amount_for_api(" 1 234 "), "1234")
        self.assertEqual(normalize_amount_for_api("   "), "")

    def test_comma_marks_locale_formatted_strings(self) -> None:
        self.assertEqual(parse_amount("1.234,50"), Decimal("1234.50"))
        self.assertEqual(parse_amount("50.00"), Decimal("50.00"))
        self.assertEqual(parse_amount(50), Decimal("50"))

    def test_rejects_non_numeric_input(self) -> None:
        for value in (None, True, "abc", "NaN", "Infinity"):
            with self.assertRaises(InvalidAmount):
                parse_amount(value)

    def test_blank_string_parses_as_zero_and_fails_positive_check(self) -> None:
        self.assertEqual(parse_amount(""), Decimal("0"))
        with self.assertRaises(InvalidAmount):
            parse_positive_amount("")
        with self.assertRaises(InvalidAmount):
            parse_positive_amount("-5")


class EffectiveRateTests(unittest.TestCase):
    def test_whole_rate_has_no_trailing_zeros(self) -> None:
        self.assertEqual(effective_rate(5000, 150000), "3000")

    def test_fractional_rate_is_rounded_to_ten_places(self) -> None:
        self.assertEqual(effective_rate(10100, 300000), "2970.297029703")

    def test_zero_source_amount_is_rejected(self) -> None:
        with self.assertRaises(InvalidAmount):
            effective_rate(0, 100)


if __name__ == "__main__":
    unittest.main()
