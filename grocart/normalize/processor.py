"""Post-processing applied to every extracted product record.

Extractors only pull raw fields out of a payload; everything here turns those
fields into a ``RawProduct`` that downstream code can rely on: a cleaned,
non-empty name, a plain non-negative price (or None), back-filled brand/size,
and an identifier that is always present.
"""

import hashlib
import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from grocart.ingest.base import RawProduct

logger = logging.getLogger(__name__)

SYNTHETIC_PREFIX = "SYN-"
DEAL_TYPES = ("regular", "sale", "clearance", "coupon")

# "$2.09", ", $1,299.00", "$ 5"
_CURRENCY_RE = re.compile(r",?\s*\$\s?\d[\d,]*(?:\.\d{1,2})?")
# Accessibility text usually repeats the name after a line break or wide gap
_SEGMENT_RE = re.compile(r"\s{2,}|\n")
_TRAILING_RE = re.compile(r"[\s,.]+$")
_PRICE_RE = re.compile(r"\d+(?:\.\d+)?|\.\d+")

_SIZE_RE = re.compile(
    r"\b\d+(?:\.\d+)?\s*-?\s*(?:"
    r"fl\.?\s*oz|fluid\s+ounces?|ounces?|oz"
    r"|pounds?|lbs?"
    r"|gallons?|gal"
    r"|quarts?|qt"
    r"|pints?|pt"
    r"|milliliters?|millilitres?|ml"
    r"|liters?|litres?|l"
    r"|kilograms?|kg|grams?|g"
    r"|count|ct|pack|pk"
    r")(?![a-z])",
    re.IGNORECASE,
)

_MIN_REPEAT = 8

_DEAL_HINTS = (
    ("sale", ("sale", "special")),
    ("clearance", ("clearance",)),
    ("coupon", ("coupon", "digital")),
)


def _comparable(text: str) -> str:
    """Lowercase and reduce punctuation to single spaces for equality checks."""
    return " ".join(re.sub(r"[^a-z0-9]+", " ", text.lower()).split())


def _glued_repeat_start(text: str) -> Optional[int]:
    """Where a second copy of the name starts when glued on with no separator.

    The copy may be cut short ("Cheerios Cereal 12 ozCheerios Cereal") and
    case is ignored.
    """
    lowered = text.lower()
    length = len(lowered)
    for cut in range((length + 1) // 2, length - _MIN_REPEAT + 1):
        if text[cut - 1].isspace() or not text[cut].isalnum():
            continue
        tail = lowered[cut:]
        if " " in tail.strip() and lowered.startswith(tail):
            return cut
    return None


def _clean_once(name: str) -> str:
    # Price fragments become segment breaks so a duplicated name splits evenly
    text = _CURRENCY_RE.sub("\n", name)

    segments = [s.strip() for s in _SEGMENT_RE.split(text) if s.strip()]
    if len(segments) > 1:
        first = _comparable(segments[0])
        second = _comparable(segments[1])
        if first and second and (
            first == second or second.startswith(first) or first.startswith(second)
        ):
            segments = segments[:1]
    text = " ".join(segments)

    cut = _glued_repeat_start(text)
    if cut is not None:
        text = text[:cut]

    words = text.split()
    if len(words) > 6:
        middle = len(words) // 2
        if [w.lower() for w in words[:middle]] == [w.lower() for w in words[middle:]]:
            words = words[:middle]

    return _TRAILING_RE.sub("", " ".join(words))


def clean_product_name(name: Optional[str]) -> str:
    """Strip embedded prices, collapse duplicated names, tidy whitespace.

    Repeats the cleaning pass until it stops changing the text, so the
    result is always a fixed point: ``clean_product_name(clean_product_name(x))
    == clean_product_name(x)``.
    """
    if not name:
        return ""

    cleaned = str(name)
    while True:
        updated = _clean_once(cleaned)
        if updated == cleaned:
            return cleaned
        cleaned = updated


def normalize_price(value: Any) -> Optional[Decimal]:
    """
    Reduce a price representation to a non-negative Decimal with two places.

    Args:
        value: "$3.99", "1,299.00", 3.99, Decimal("3.99"), None, ...

    Returns:
        Decimal price, or None when the value cannot be read as a price
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
    else:
        text = re.sub(r"[$,\s]", "", str(value))
        if not _PRICE_RE.fullmatch(text):
            return None
        amount = Decimal(text)

    if not amount.is_finite() or amount < 0:
        return None
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def extract_brand(name: str) -> Optional[str]:
    """Brand is the leading 1-3 word fragment before the first comma."""
    if not name or "," not in name:
        return None
    lead = name.split(",", 1)[0].strip()
    if 1 <= len(lead.split()) <= 3:
        return lead
    return None


def extract_size(name: str) -> Optional[str]:
    """Return the first quantity-unit phrase in the name, e.g. "10.5 oz"."""
    if not name:
        return None
    match = _SIZE_RE.search(name)
    if not match:
        return None
    return " ".join(match.group(0).split())


def normalize_barcode(value: Any) -> Optional[str]:
    """Reduce a UPC/EAN to a canonical digit string, or None if it isn't one."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if len(digits) == 13 and digits.startswith("0"):
        return digits[1:]
    if len(digits) in (12, 13):
        return digits
    return None


def is_real_barcode(identifier: Optional[str]) -> bool:
    """True for 12/13 digit UPC/EAN codes (not SKUs or synthetic ids)."""
    return bool(identifier) and identifier.isdigit() and len(identifier) in (12, 13)


def is_synthetic_identifier(identifier: Optional[str]) -> bool:
    return bool(identifier) and identifier.startswith(SYNTHETIC_PREFIX)


def synthesize_identifier(clean_name: str, source: str) -> str:
    """Deterministic stand-in identifier for a product with no barcode or SKU."""
    digest = hashlib.sha1(
        f"{source.lower()}|{clean_name.lower()}".encode("utf-8")
    ).hexdigest()
    return f"{SYNTHETIC_PREFIX}{digest[:16].upper()}"


def deal_type_from_hint(text: Optional[str]) -> str:
    """Map free-text promo labels ("Digital Coupon", "On Sale!") to a deal type."""
    if not text:
        return "regular"
    lowered = str(text).lower()
    if lowered in DEAL_TYPES:
        return lowered
    for deal_type, keywords in _DEAL_HINTS:
        if any(keyword in lowered for keyword in keywords):
            return deal_type
    return "regular"


def deal_type_from_savings(percent: Any) -> str:
    """Clearance at 30%+ off, sale at 10%+ off."""
    try:
        value = float(percent)
    except (TypeError, ValueError):
        return "regular"
    if value >= 30:
        return "clearance"
    if value >= 10:
        return "sale"
    return "regular"


class ProductNormalizer:
    """Turn raw extracted fields into a ``RawProduct``."""

    def normalize(
        self,
        fields: dict[str, Any],
        source: str,
        sku_prefix: str = "",
    ) -> Optional[RawProduct]:
        """
        Apply the post-processing contract to one extracted record.

        Args:
            fields: Raw values keyed by name, brand, size, price, barcode, sku,
                    image_url, category, deal_hint, savings_percent
            source: Source identifier the record came from
            sku_prefix: Prefix that scopes source SKUs to their chain (e.g. "TGT")

        Returns:
            RawProduct, or None when no usable name survives cleaning
        """
        name = clean_product_name(_as_text(fields.get("name")))
        if not name:
            logger.debug(f"Dropping record without a usable name from {source}")
            return None

        identifier, kind = self._resolve_identifier(fields, name, source, sku_prefix)

        brand = _as_text(fields.get("brand")) or extract_brand(name)
        size = _as_text(fields.get("size")) or extract_size(name)

        deal_type = deal_type_from_hint(_as_text(fields.get("deal_hint")))
        if deal_type == "regular" and fields.get("savings_percent") is not None:
            deal_type = deal_type_from_savings(fields.get("savings_percent"))

        return RawProduct(
            name=name,
            identifier=identifier,
            identifier_kind=kind,
            source=source,
            brand=brand,
            size=size,
            price=normalize_price(fields.get("price")),
            deal_type=deal_type,
            image_url=_as_text(fields.get("image_url")),
            category=_as_text(fields.get("category")),
        )

    def _resolve_identifier(
        self,
        fields: dict[str, Any],
        name: str,
        source: str,
        sku_prefix: str,
    ) -> tuple[str, str]:
        barcode = normalize_barcode(fields.get("barcode"))
        if barcode:
            return barcode, "barcode"

        sku = _as_text(fields.get("sku"))
        if sku:
            if not sku_prefix:
                sku_barcode = normalize_barcode(sku) if sku.isdigit() else None
                if sku_barcode:
                    return sku_barcode, "barcode"
            return f"{sku_prefix}{sku}", "sku"

        return synthesize_identifier(name, source), "synthetic"


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


# Global normalizer instance
product_normalizer = ProductNormalizer()
