"""Company name, website and funding-stage normalization helpers."""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

from substack_intel.core.models import FundingStatus

_SEPARATORS_RE = re.compile(r"[-–—/\\_]+")
_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)
_WS_RE = re.compile(r"\s+")

_FUNDING_ALIASES = {
    "seed": FundingStatus.SEED,
    "pre seed": FundingStatus.SEED,
    "preseed": FundingStatus.SEED,
    "seed round": FundingStatus.SEED,
    "angel": FundingStatus.SEED,
    "series a": FundingStatus.SERIES_A,
    "series b": FundingStatus.SERIES_B,
    "series c": FundingStatus.SERIES_C,
    "series d": FundingStatus.SERIES_C,
    "series e": FundingStatus.SERIES_C,
    "growth": FundingStatus.SERIES_C,
    "late stage": FundingStatus.SERIES_C,
    "public": FundingStatus.PUBLIC,
    "ipo": FundingStatus.PUBLIC,
    "publicly traded": FundingStatus.PUBLIC,
    "listed": FundingStatus.PUBLIC,
    "unknown": FundingStatus.UNKNOWN,
}

# Ordered most specific first
_FUNDING_CONTEXT_PATTERNS = [
    (re.compile(r"\bseries[\s-]*c\b|\bseries[\s-]*[d-h]\b", re.I), FundingStatus.SERIES_C),
    (re.compile(r"\bseries[\s-]*b\b", re.I), FundingStatus.SERIES_B),
    (re.compile(r"\bseries[\s-]*a\b", re.I), FundingStatus.SERIES_A),
    (re.compile(r"\b(pre[\s-]?)?seed\b", re.I), FundingStatus.SEED),
    (re.compile(r"\b(ipo|went public|publicly traded)\b|\b(nyse|nasdaq)\s*:", re.I), FundingStatus.PUBLIC),
]


def normalize_company_name(name: Optional[str]) -> str:
    """
    Dedup key for a company name.

    Lowercases, maps separators to spaces, strips punctuation and collapses
    whitespace: ``"Acme Inc."``, ``"acme inc"`` and ``"ACME INC."`` all give
    ``"acme inc"``. Returns an empty string when nothing usable is left.
    """
    if not name:
        return ""
    text = unicodedata.normalize("NFKC", name).lower()
    text = _SEPARATORS_RE.sub(" ", text)
    text = _PUNCT_RE.sub("", text).replace("_", " ")
    return _WS_RE.sub(" ", text).strip()


def normalize_funding_status(value: Optional[str]) -> Optional[str]:
    """Map a free-form funding label onto the funding enum, or None."""
    if value is None:
        return None
    if isinstance(value, FundingStatus):
        return value.value
    key = _WS_RE.sub(" ", _SEPARATORS_RE.sub(" ", str(value).lower())).strip()
    key = key.replace(" funding", "").replace(" round", "").strip()
    if not key:
        return None
    status = _FUNDING_ALIASES.get(key)
    if status is not None:
        return status.value
    return infer_funding_status(key)


def infer_funding_status(text: Optional[str]) -> Optional[str]:
    """Find a funding stage mentioned in surrounding text."""
    if not text:
        return None
    for pattern, status in _FUNDING_CONTEXT_PATTERNS:
        if pattern.search(text):
            return status.value
    return None


def normalize_website(value: Optional[str]) -> Optional[str]:
    """Return an absolute http(s) URL or None for unusable values."""
    if not value:
        return None
    url = str(value).strip().rstrip("/.,;")
    if not url or url.lower() in ("n/a", "none", "null", "unknown"):
        return None
    if " " in url or "." not in url:
        return None
    if not re.match(r"^https?://", url, re.I):
        url = f"https://{url}"
    return url[:500]
