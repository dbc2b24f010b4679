"""Context labels shared by summaries and analytics"""
from typing import Iterable, Optional

DOMAIN_ALIASES = {
    "x.com": "twitter.com",
}


def canonical_domain(domain: Optional[str]) -> Optional[str]:
    """Normalise a domain for grouping (lower-case, no www., known aliases)"""
    if not domain:
        return None
    cleaned = domain.strip().lower()
    if cleaned.startswith("www."):
        cleaned = cleaned[4:]
    return DOMAIN_ALIASES.get(cleaned, cleaned)


def context_label(domain: Optional[str], app_name: Optional[str]) -> str:
    return domain or app_name or "Unknown"


def is_suppressed(domain: Optional[str], app_name: Optional[str], keywords: Iterable[str]) -> bool:
    """True when a privacy keyword appears in the domain or app name"""
    keywords = [k for k in keywords if k]
    if not keywords:
        return False
    haystack = f"{domain or ''} {app_name or ''}".lower()
    return any(keyword in haystack for keyword in keywords)
