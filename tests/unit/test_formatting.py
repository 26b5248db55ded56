"""
Unit tests for result formatting and numeric input parsing.
"""

import pytest

from cardstream.formulas.formatting import format_number, parse_formatted, parse_number_input


class TestFormatNumber:

    @pytest.mark.parametrize("value,unit,expected", [
        (122.5, "kWh", "122,5 kWh"),
        (12345.678, "€", "12 345,68 €"),
        (1000000, None, "1 000 000"),
        (0, "kWh", "0 kWh"),
        (-1234.5, None, "-1 234,5"),
        (2.0, None, "2"),
        (999.999, None, "1 000"),
    ])
    def test_default_format(self, value, unit, expected):
        assert format_number(value, unit) == expected

    def test_fixed_decimals_keep_zeros(self):
        assert format_number(1800, "€", decimals=2) == "1 800,00 €"
        assert format_number(1800.4, "€", decimals=0) == "1 800 €"

    def test_max_decimals(self):
        assert format_number(1.23456, max_decimals=3) == "1,235"

    def test_text_passes_through(self):
        assert format_number("Maalämpö") == "Maalämpö"
        assert format_number("A", "kpl") == "A kpl"

    def test_bool_as_number(self):
        assert format_number(True) == "1"

    def test_non_finite_rejected(self):
        with pytest.raises(ValueError):
            format_number(float("inf"))


class TestParseFormatted:

    @pytest.mark.parametrize("value,unit", [
        (122.5, "kWh"),
        (12345.67, "€"),
        (-1234.5, None),
        (0.01, "%"),
    ])
    def test_format_then_parse(self, value, unit):
        assert parse_formatted(format_number(value, unit), unit) == pytest.approx(value)

    def test_non_breaking_space_grouping(self):
        assert parse_formatted("12\u00a0345,5") == 12345.5

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_formatted("abc")


class TestParseNumberInput:

    @pytest.mark.parametrize("raw,expected", [
        (120, 120.0),
        (2.5, 2.5),
        ("2,5", 2.5),
        ("2.5", 2.5),
        ("1 200.75", 1200.75),
        ("-3", -3.0),
        (" 42 ", 42.0),
    ])
    def test_numbers(self, raw, expected):
        assert parse_number_input(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "1,2,3", True, None, [1], float("nan")])
    def test_not_numbers(self, raw):
        assert parse_number_input(raw) is None
