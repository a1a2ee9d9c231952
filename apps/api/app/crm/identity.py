from __future__ import annotations

import re

_NON_DIGITS = re.compile(r"\D+")


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def normalize_phone(value: str | None) -> str | None:
    raw = _blank_to_none(value)
    if raw is None:
        return None
    digits = _NON_DIGITS.sub("", raw)
    return digits or None


def normalize_email(value: str | None) -> str | None:
    raw = _blank_to_none(value)
    return raw.lower() if raw is not None else None


def normalize_document(value: str | None) -> str | None:
    raw = _blank_to_none(value)
    if raw is None:
        return None
    digits = _NON_DIGITS.sub("", raw)
    return digits or None


def phone_variants(value: str | None, country_code: str) -> list[str]:
    """Stored forms a phone may have been saved under.

    Numbers are compared digits-only, with and without the default country
    code, so "+55 (11) 99999-0000" and "11999990000" resolve to one contact.
    """

    digits = normalize_phone(value)
    if digits is None:
        return []

    variants = [digits]
    if country_code and digits.startswith(country_code):
        local = digits[len(country_code):]
        if len(local) >= 8:
            variants.append(local)
    elif country_code:
        variants.append(f"{country_code}{digits}")

    raw = _blank_to_none(value)
    if raw is not None and raw not in variants:
        variants.append(raw)
    return variants
