from __future__ import annotations

from app.crm.identity import normalize_document, normalize_email, normalize_phone, phone_variants


def test_normalize_phone_keeps_digits_only() -> None:
    assert normalize_phone("+55 (11) 99999-0000") == "5511999990000"
    assert normalize_phone("   ") is None
    assert normalize_phone("ext.") is None
    assert normalize_phone(None) is None


def test_normalize_email_lowercases_and_trims() -> None:
    assert normalize_email("  Maria.Silva@Example.COM ") == "maria.silva@example.com"
    assert normalize_email("") is None


def test_normalize_document_strips_punctuation() -> None:
    assert normalize_document("123.456.789-09") == "12345678909"
    assert normalize_document(" - ") is None


def test_phone_variants_cover_with_and_without_country_code() -> None:
    assert phone_variants("+55 11 99999-0000", "55")[:2] == ["5511999990000", "11999990000"]
    assert phone_variants("11 99999-0000", "55")[:2] == ["11999990000", "5511999990000"]


def test_phone_variants_do_not_strip_code_from_short_numbers() -> None:
    variants = phone_variants("551234", "55")

    assert "1234" not in variants
    assert variants[0] == "551234"


def test_phone_variants_empty_for_blank_input() -> None:
    assert phone_variants("", "55") == []
    assert phone_variants(None, "55") == []
