"""Small text helpers shared by intake, extraction and message composition."""

import re
from typing import Any, Optional

# UK postcode, outward + inward code (e.g. "M1 1AE", "SW1A 2AA")
_POSTCODE_RE = re.compile(
    r"\b([A-Z]{1,2}\d[A-Z\d]?)\s*(\d[A-Z]{2})\b",
    re.IGNORECASE,
)
_PRICE_CLEAN_RE = re.compile(r"[£$,\s]")
_PRICE_SUFFIX_RE = re.compile(r"^(\d+(?:\.\d+)?)([km])$", re.IGNORECASE)


def format_gbp(amount: float) -> str:
    """Format a whole-pound amount for an SMS, e.g. ``£212,000``."""
    return f"£{amount:,.0f}"


def normalize_uk_phone(raw: Optional[str]) -> str:
    """Return *raw* in E.164 form, assuming a UK number when no prefix."""
    if not raw:
        return ""
    digits = re.sub(r"[^\d+]", "", raw)
    if digits.startswith("+"):
        return digits
    if digits.startswith("00"):
        return "+" + digits[2:]
    if digits.startswith("44"):
        return "+" + digits
    if digits.startswith("0"):
        return "+44" + digits[1:]
    return "+" + digits


def extract_postcode(address: Optional[str]) -> Optional[str]:
    """Pull a UK postcode out of a free-text address, normalised."""
    if not address:
        return None
    match = _POSTCODE_RE.search(address)
    if not match:
        return None
    return f"{match.group(1).upper()} {match.group(2).upper()}"


def parse_price(value: Any) -> Optional[float]:
    """Coerce ``250000``, ``"£250,000"`` or ``"250k"`` into a float.

    Returns ``None`` for anything that is not recognisably a price.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    cleaned = _PRICE_CLEAN_RE.sub("", value)
    suffix = _PRICE_SUFFIX_RE.match(cleaned)
    if suffix:
        multiplier = 1_000 if suffix.group(2).lower() == "k" else 1_000_000
        return float(suffix.group(1)) * multiplier
    try:
        return float(cleaned)
    except ValueError:
        return None


def truncate_sms(text: str, limit: int) -> str:
    """Trim *text* to *limit* characters on a word boundary."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[: limit - 1].rsplit(" ", 1)[0]
    return cut.rstrip(",;:") + "…"
