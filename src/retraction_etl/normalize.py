"""Normalization functions for Retraction Watch CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

# ---------------------------------------------------------------------------
# DOI patterns
# ---------------------------------------------------------------------------

_DOI_PREFIX_RE = re.compile(r"^https?://(dx\.)?doi\.org/", re.IGNORECASE)
_DOI_LABEL_RE = re.compile(r"^doi:\s*", re.IGNORECASE)
_PERCENT_SLASH_RE = re.compile(r"%2F", re.IGNORECASE)
_PERCENT_COLON_RE = re.compile(r"%3A", re.IGNORECASE)
_DOI_CORE_RE = re.compile(r"(10\.[0-9]+(?:\.[0-9]+)*/[\w.!$&'()*+,;=:@/-]+)", re.IGNORECASE)

# Trailing path segments publishers append to landing-page URLs.
VIEW_TOKENS = frozenset({
    "full", "pdf", "epdf", "abs", "abstract", "html", "xml", "figures",
    "tables", "metrics", "references", "citedby", "reprint", "suppl",
    "supplementary", "supplementary-material", "download", "view", "reader",
})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_doi
# ---------------------------------------------------------------------------

def normalize_doi(value: str | None) -> str | None:
    """Return the lowercase bare DOI found in value, or None.

    Strips resolver prefixes (https://doi.org/, doi:), decodes percent-encoded
    slashes and colons, and drops a trailing view token such as /pdf when the
    DOI has at least three path segments.  Never raises.
    """
    v = trim(value)
    if v is None:
        return None
    v = _DOI_PREFIX_RE.sub("", v)
    v = _DOI_LABEL_RE.sub("", v)
    v = _PERCENT_SLASH_RE.sub("/", v)
    v = _PERCENT_COLON_RE.sub(":", v)

    m = _DOI_CORE_RE.search(v)
    if not m:
        return None

    doi = m.group(1).lower()
    segs = doi.split("/")
    if len(segs) >= 3 and segs[-1] in VIEW_TOKENS:
        doi = "/".join(segs[:-1])
    return doi


# ---------------------------------------------------------------------------
# Rule 3: parse_record_id
# ---------------------------------------------------------------------------

# Record IDs are stored in a BIGINT column.
MAX_RECORD_ID = 2**63 - 1


def parse_record_id(value: str | None) -> int | None:
    """Parse a Record ID cell into a positive integer that fits a BIGINT.

    Plain integers are parsed exactly.  Numeric forms such as "12.0" or
    "1e3" are accepted when they denote a whole number.  Returns None for
    blank, non-numeric, non-finite, non-integral, zero, negative or
    out-of-range values, and for digit-group underscores.
    """
    v = trim(value)
    if v is None or "_" in v:
        return None
    try:
        num = int(v)
    except ValueError:
        try:
            dec = Decimal(v)
        except InvalidOperation:
            return None
        if not dec.is_finite() or dec <= 0 or dec > MAX_RECORD_ID:
            return None
        if dec != dec.to_integral_value():
            return None
        num = int(dec)
    if num <= 0 or num > MAX_RECORD_ID:
        return None
    return num
