import pytest

from vendor_pipeline.core.formatting import (
    extract_postcode,
    format_gbp,
    normalize_uk_phone,
    parse_price,
    truncate_sms,
)


class TestPhone:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("07700 900123", "+447700900123"),
            ("+44 7700 900123", "+447700900123"),
            ("447700900123", "+447700900123"),
            ("0044 7700 900123", "+447700900123"),
            ("(0161) 555-0000", "+441615550000"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_uk_phone(raw) == expected


class TestPostcode:
    @pytest.mark.parametrize(
        "address, expected",
        [
            ("12 High Street, Manchester M1 1AE", "M1 1AE"),
            ("Flat 3, 10 Downing St, London sw1a2aa", "SW1A 2AA"),
            ("1 Church Lane, Leeds LS1 4DY, UK", "LS1 4DY"),
            ("Somewhere without a postcode", None),
            (None, None),
        ],
    )
    def test_extract(self, address, expected):
        assert extract_postcode(address) == expected


class TestPrice:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (250000, 250_000.0),
            ("£250,000", 250_000.0),
            ("250k", 250_000.0),
            ("1.2m", 1_200_000.0),
            ("about 200", None),
            (True, None),
            (None, None),
            ([250000], None),
        ],
    )
    def test_parse(self, value, expected):
        assert parse_price(value) == expected

    def test_format_gbp(self):
        assert format_gbp(212000) == "£212,000"
        assert format_gbp(1234567.6) == "£1,234,568"


class TestTruncate:
    def test_short_text_untouched(self):
        assert truncate_sms("Hello  there", 160) == "Hello there"

    def test_cuts_on_word_boundary(self):
        text = "Thanks for that, could you tell me a bit more about the property"
        result = truncate_sms(text, 30)
        assert len(result) <= 30
        assert result.endswith("…")
        assert result[:-1] in text
        assert not result[:-1].endswith(",")
