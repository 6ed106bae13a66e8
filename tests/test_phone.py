"""Tests for phone number normalisation."""

from dialer.services.phone import normalize_recipient_number, normalize_to_e164


class TestNormalizeToE164:

    def test_adds_plus(self):
        assert normalize_to_e164("61370566663") == "+61370566663"

    def test_keeps_existing_plus(self):
        assert normalize_to_e164("+61370566663") == "+61370566663"

    def test_international_prefix(self):
        assert normalize_to_e164("0061370566663") == "+61370566663"

    def test_strips_formatting(self):
        assert normalize_to_e164("+1 (415) 555-1234") == "+14155551234"
        assert normalize_to_e164("61.3.7056.6663") == "+61370566663"


class TestNormalizeRecipientNumber:

    def test_ten_digits_are_us_numbers(self):
        assert normalize_recipient_number("(415) 555-1234") == "+14155551234"

    def test_other_lengths_get_plus_only(self):
        assert normalize_recipient_number("61 3 7056 6663") == "+61370566663"

    def test_strips_letters_and_symbols(self):
        assert normalize_recipient_number("tel: +61-400-000-001") == "+61400000001"

    def test_already_e164(self):
        assert normalize_recipient_number("+14155551234") == "+14155551234"
