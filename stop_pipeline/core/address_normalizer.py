"""
Address text normalization.

Delivery spreadsheets carry free-text Brazilian addresses written in many
ways ("Av. Brasil, 1200 - fundos", "AVENIDA BRASIL,1200,Casa 2"). This module
turns them into:

- a grouping signature (street + number, complement excluded) that is stable
  and idempotent: normalizing a signature again returns it unchanged;
- a complement (unit, block, "fundos"...) compared across rows of a group;
- a learning key used by the learned-location cache.
"""

import re
import unicodedata
from typing import Optional

# Street-type abbreviations, only expanded at the start of a comma segment
STREET_TYPE_ABBREVIATIONS = {
    "avenida": ["av", "avd", "avda", "ave", "avn"],
    "rua": ["r"],
    "rodovia": ["rod", "rdv", "rodov"],
    "alameda": ["al", "alam"],
    "travessa": ["tv", "trav", "tr"],
    "estrada": ["estr", "est"],
    "praca": ["pc", "pca", "pr"],
    "beco": ["bc"],
    "largo": ["lgo", "lg"],
    "viela": ["vla"],
}

_STREET_TYPE_RES = [
    (re.compile(r"(^|,)\s*(?:" + "|".join(abbreviations) + r")\b\.?\s*"), full)
    for full, abbreviations in STREET_TYPE_ABBREVIATIONS.items()
]

_PROXIMITY_RE = re.compile(
    r"\b(?:proximo (?:a|ao|da|do)|proximo|perto (?:de|da|do)|em frente (?:a|ao|da|do)|ao lado (?:de|da|do))\b"
)
_NO_NUMBER_RE = re.compile(r"\bs\s*/\s*n\b\.?|\bs\.\s*n\.?|\bsn\b|\bsem (?:numero|num|n)\b")
_NUMBER_MARKERS = r"(?:n|no|num|numero|nro)"
_NUMBER_MARKER_RE = re.compile(r"\b" + _NUMBER_MARKERS + r"\b\.?\s*,?\s*(?=\d)")
# "n123", "no123" ("nº" folds to "no")
_GLUED_NUMBER_MARKER_RE = re.compile(r"\b" + _NUMBER_MARKERS + r"(?=\d)")
_TRAILING_NUMBER_MARKER_RE = re.compile(r"(?:^|\s)" + _NUMBER_MARKERS + r"\.?$")
_DISALLOWED_CHARS_RE = re.compile(r"[^a-z0-9\s\-,\.]")
# CEP as printed in provider display names ("01310-100")
_POSTCODE_RE = re.compile(r"\b\d{5}-\d{3}\b")

# House number: last digit run preceded by a separator, followed only by a
# non-digit suffix (unit letter, "fundos", punctuation).
_TRAILING_NUMBER_RE = re.compile(r"(?:^|[\s,])(\d+)(\D*)$")
_ANY_NUMBER_RE = re.compile(r"\d+")
_LEADING_NUMBER_SEGMENT_RE = re.compile(r"\d+\s*[a-z]?")
_NUMBER_SEGMENT_RE = re.compile(r"(?:" + _NUMBER_MARKERS + r"\.?\s*)?\d")
_RAW_NUMBER_SEGMENT_RE = re.compile(
    r"^\s*(?:(?:n|no|nº|n°|num|numero|número|nro)\.?\s*)?\d", re.IGNORECASE
)
_RAW_TRAILING_NUMBER_RE = re.compile(r"\d+\s*[A-Za-z]?$")

_BLOCK_AND_LOT_RES = [
    re.compile(r"\b(?:quadra|qd|qda|q)\b\.?\s*[a-z]?\d+[a-z]?\b.*?\b(?:lote|lt|l)\b\.?\s*\d+"),
    re.compile(r"\b(?:lote|lt)\b\.?\s*\d+[a-z]?\b.*?\b(?:quadra|qd|qda)\b\.?\s*[a-z]?\d+"),
]

LEARNING_KEY_DELIMITER = "_"
_MAX_SIGNATURE_PASSES = 5


def fold_text(text: Optional[str]) -> str:
    """Strip accents, lower-case and collapse whitespace."""
    if not text:
        return ""
    without_accents = (
        unicodedata.normalize("NFKD", str(text))
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    return " ".join(without_accents.lower().split())


def expand_street_types(text: str) -> str:
    """Expand street-type abbreviations at the start of each comma segment."""
    for pattern, full in _STREET_TYPE_RES:
        text = pattern.sub(lambda m: f"{m.group(1)} {full} ", text)
    return _collapse(text)


def normalize_text(text: Optional[str], expand_abbreviations: bool = True) -> str:
    """Canonical form used for grouping and administrative-area matching.

    Street-type expansion is skipped for administrative names, where "AL" or
    "PR" are states rather than "alameda" or "praca".
    """
    s = fold_text(text)
    if not s:
        return ""

    s = _POSTCODE_RE.sub(" ", s)
    s = _PROXIMITY_RE.sub(" ", s)
    s = _NO_NUMBER_RE.sub(" ", s)
    s = _DISALLOWED_CHARS_RE.sub(" ", s)
    s = _NUMBER_MARKER_RE.sub("", s)
    s = _GLUED_NUMBER_MARKER_RE.sub("", s)
    if expand_abbreviations:
        return expand_street_types(s)
    return _collapse(s)


def normalize_complement(text: Optional[str]) -> str:
    """Fold a complement for equality checks; never used for display."""
    return fold_text(text)


def extract_complement(address: Optional[str]) -> str:
    """Return the complement of a "street, number, complement" address.

    A unit letter on the number ("123a", "123 A") stays with the number.
    Several trailing segments are joined back with ", ".

    Examples:
        >>> extract_complement("Rua Exemplo, 123a, Casa 2")
        'Casa 2'
        >>> extract_complement("Rua Exemplo, 123")
        ''
    """
    if not address:
        return ""

    segments = [part.strip() for part in str(address).split(",")]

    for index in range(1, len(segments)):
        if _RAW_NUMBER_SEGMENT_RE.match(segments[index]):
            return ", ".join(part for part in segments[index + 1:] if part)

    if _RAW_TRAILING_NUMBER_RE.search(segments[0]):
        return ", ".join(part for part in segments[1:] if part)

    return ""


def extract_normalized_street_and_number(address: Optional[str]) -> str:
    """Build the grouping signature "<street> <number>".

    Complement segments are discarded, and provider display names in the
    "123, Rua X, Bairro, Cidade" form are reordered to street first, so raw
    spreadsheet text and geocoder output converge on the same signature.
    Passes are repeated until the result stops changing, so a signature
    normalizes to itself.

    Examples:
        >>> extract_normalized_street_and_number("R. Exemplo, 123, Fundos")
        'rua exemplo 123'
        >>> extract_normalized_street_and_number("Rua Exemplo, 123a, Casa 2")
        'rua exemplo 123'
    """
    signature = _signature_pass(address)
    for _ in range(_MAX_SIGNATURE_PASSES):
        again = _signature_pass(signature)
        if again == signature:
            break
        signature = again
    return signature


def _signature_pass(address: Optional[str]) -> str:
    s = normalize_text(address)
    if not s:
        return ""

    s = _street_and_number_segments(s)

    match = _TRAILING_NUMBER_RE.search(s)
    if match:
        street = s[:match.start()]
        number = match.group(1)
    else:
        match = _ANY_NUMBER_RE.search(s)
        if match:
            street = f"{s[:match.start()]} {s[match.end():]}"
            number = match.group(0)
        else:
            street = s
            number = ""

    street = _clean_street(street)
    if not number:
        return street

    number = str(int(number))
    return f"{street} {number}" if street else number


def street_and_number_display(address: Optional[str]) -> str:
    """Street and number portion of an address, for display."""
    if not address:
        return ""
    segments = [part.strip() for part in str(address).split(",")]
    return ", ".join(part for part in segments[:2] if part)


def build_learning_key(
    address: Optional[str],
    neighborhood: Optional[str] = None,
    city: Optional[str] = None,
    state: Optional[str] = None,
) -> str:
    """Build the learned-location key for an address.

    The complement is deliberately left out: units sharing a building number
    share a coordinate.
    """
    parts = [
        extract_normalized_street_and_number(address),
        fold_text(neighborhood),
        fold_text(city),
        fold_text(state),
    ]
    key = LEARNING_KEY_DELIMITER.join(parts)
    key = re.sub(r"\s+", LEARNING_KEY_DELIMITER, key)
    return re.sub(r"[^a-z0-9_]", "", key.lower())


def is_block_and_lot(address: Optional[str]) -> bool:
    """Detect subdivision references ("Quadra 12 Lote 5") free-text geocoders cannot resolve."""
    s = fold_text(address)
    if not s:
        return False
    return any(pattern.search(s) for pattern in _BLOCK_AND_LOT_RES)


def _collapse(text: str) -> str:
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\s+,", ",", text)
    return text.strip()


def _street_and_number_segments(s: str) -> str:
    """Keep only the street and number segments of a normalized address."""
    segments = [part.strip() for part in s.split(",") if part.strip()]
    if not segments:
        return ""

    # Display-name form: "123, rua x, bairro, cidade, ..."
    if len(segments) >= 2 and _LEADING_NUMBER_SEGMENT_RE.fullmatch(segments[0]):
        return f"{segments[1]}, {segments[0]}"

    for index in range(1, len(segments)):
        if _NUMBER_SEGMENT_RE.match(segments[index]):
            return ", ".join(segments[:index + 1])

    if _TRAILING_NUMBER_RE.search(segments[0]):
        return segments[0]

    return ", ".join(segments)


def _clean_street(street: str) -> str:
    street = _collapse(street.replace(",", " "))
    previous = None
    while street != previous:
        previous = street
        street = _TRAILING_NUMBER_MARKER_RE.sub("", street).strip(" -.")
    return expand_street_types(street)
