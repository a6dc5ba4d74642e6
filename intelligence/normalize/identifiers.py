"""Identifier normalisation: one canonical key per external profile.

Browser extraction hands us profile URLs in many shapes (``http://``,
mixed-case hosts, tracking query strings, trailing slashes). The Entity
Store keys on the normalized form so each subject maps to exactly one
Entity row.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

from intelligence.models import CitationSourceType

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def normalize_identifier(value: str) -> str:
    """Return the canonical form of a profile URL (or opaque identifier).

    URLs are forced to https with a lowercase host and no query string,
    fragment or trailing slash. Values that are not URLs are only trimmed.
    """
    raw = (value or "").strip()
    if not raw:
        return ""
    candidate = raw if _SCHEME_RE.match(raw) else None
    if candidate is None and "." in raw.split("/", 1)[0] and " " not in raw:
        candidate = f"https://{raw}"
    if candidate is None:
        return raw

    parts = urlsplit(candidate)
    if not parts.netloc:
        return raw
    host = parts.netloc.lower()
    path = parts.path.rstrip("/")
    return urlunsplit(("https", host, path, "", ""))


def infer_entity_type(identifier: str) -> str:
    """Best-effort person/company guess from a profile URL path."""
    path = urlsplit(normalize_identifier(identifier)).path.lower()
    if path.startswith("/company/") or path.startswith("/school/"):
        return "company"
    return "person"


# Domain fragments that imply a citation's source_type.
_SOURCE_TYPE_MAP: list[tuple[str, CitationSourceType]] = [
    ("sec.gov", CitationSourceType.sec_filing),
    ("finra.org", CitationSourceType.sec_filing),
    ("businesswire.com", CitationSourceType.press_release),
    ("prnewswire.com", CitationSourceType.press_release),
    ("globenewswire.com", CitationSourceType.press_release),
    ("linkedin.com", CitationSourceType.profile),
    ("crunchbase.com", CitationSourceType.database),
    ("pitchbook.com", CitationSourceType.database),
    ("opencorporates.com", CitationSourceType.database),
    ("reuters.com", CitationSourceType.news),
    ("bloomberg.com", CitationSourceType.news),
    ("wsj.com", CitationSourceType.news),
    ("ft.com", CitationSourceType.news),
    ("forbes.com", CitationSourceType.news),
    ("techcrunch.com", CitationSourceType.news),
    ("nytimes.com", CitationSourceType.news),
    ("cnbc.com", CitationSourceType.news),
]


def classify_source_type(url: str) -> CitationSourceType:
    """Map a source URL to a citation source_type (defaults to website)."""
    host = urlsplit(url or "").netloc.lower()
    if not host:
        return CitationSourceType.website
    for domain, source_type in _SOURCE_TYPE_MAP:
        if host == domain or host.endswith("." + domain):
            return source_type
    return CitationSourceType.website


_SLUG_RE = re.compile(r"[^a-z0-9]+")

SUBJECT_KEY_PREFIX = "subject:"


def _slug(value: str) -> str:
    return _SLUG_RE.sub("-", (value or "").lower()).strip("-")


def subject_identifier(name: str, affiliation: str = "", profile_url: str = "") -> str:
    """Entity key for a research subject.

    The normalized profile URL when there is one. Subjects requested by name
    alone get a stable ``subject:name|affiliation`` key instead, so repeat
    requests land on the same Entity.
    """
    key = normalize_identifier(profile_url)
    if key:
        return key
    parts = [p for p in (_slug(name), _slug(affiliation)) if p]
    if not parts:
        return ""
    return SUBJECT_KEY_PREFIX + "|".join(parts)


def is_profile_url(identifier: str) -> bool:
    return (identifier or "").startswith("https://")
