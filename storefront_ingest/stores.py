"""
Storefront registry.

Parses the SHOPIFY_STORES configuration (a JSON array of {domain, token}),
sanitizes domains and validates credentials before any run touches them.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from storefront_ingest.config import Config
from storefront_ingest.errors import ConfigurationError

_DOMAIN_RE = re.compile(r"^[a-z0-9.-]+$", re.IGNORECASE)
TOKEN_PREFIX = "shpat_"


@dataclass(frozen=True)
class Store:
    """One independently-credentialed storefront."""

    domain: str
    token: str

    @property
    def handle(self) -> str:
        return self.domain.split(".")[0]

    def __repr__(self) -> str:
        # Never print the access token.
        return f"Store(domain={self.domain!r})"


def sanitize_domain(raw: Optional[str]) -> str:
    """
    Normalize a configured or user-supplied shop domain.

    Drops surrounding whitespace, the protocol, any path or query string and
    stray quotes, e.g. ``' "https://acme.myshopify.com/admin" '`` becomes
    ``acme.myshopify.com``.

    Args:
        raw: Domain as configured or passed in a query string

    Returns:
        str: Sanitized domain, or '' for empty input
    """
    if not raw:
        return ""
    domain = str(raw).strip()
    domain = domain.strip("\"'")
    domain = re.sub(r"^https?://", "", domain, flags=re.IGNORECASE)
    domain = re.sub(r"/.*", "", domain)
    domain = re.sub(r"^\"+|\"+$", "", domain)
    domain = re.sub(r"^'+|'+$", "", domain)
    return domain.lower()


def is_valid_domain(domain: str) -> bool:
    """Whether a sanitized domain looks like a host name."""
    return bool(_DOMAIN_RE.match(domain or "")) and "." in domain


def parse_stores(raw: Optional[str]) -> List[Store]:
    """
    Parse the SHOPIFY_STORES value.

    Accepts a JSON array, or a JSON string that itself contains a JSON array
    (double-encoded secrets). Anything unparsable yields an empty list; the
    callers report "No stores configured".

    Args:
        raw: Raw configuration value

    Returns:
        List of stores with sanitized domains (tokens are not validated here)
    """
    if not raw:
        return []
    try:
        value = json.loads(raw)
        if isinstance(value, str):
            value = json.loads(value)
    except (TypeError, ValueError):
        return []
    if not isinstance(value, list):
        return []

    stores = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        stores.append(
            Store(
                domain=sanitize_domain(str(entry.get("domain") or "")),
                token=str(entry.get("token") or "").strip(),
            )
        )
    return stores


def validate_store(store: Store) -> Store:
    """
    Check that a store can be ingested.

    Args:
        store: Store to check

    Returns:
        The same store, for chaining

    Raises:
        ConfigurationError: Invalid domain or missing/invalid Admin API token
    """
    if not is_valid_domain(store.domain):
        raise ConfigurationError(f'Invalid shop domain: "{store.domain}"')
    if not store.token.startswith(TOKEN_PREFIX):
        raise ConfigurationError(f"Missing/invalid Admin API token for {store.domain}")
    return store


def select_stores(stores: List[Store], target: Optional[str]) -> List[Store]:
    """
    Narrow the configured stores to an optional single target.

    Args:
        stores: Configured stores
        target: Raw domain from a request, or None/'' for all stores

    Returns:
        Matching stores (empty when the target is not configured)
    """
    domain = sanitize_domain(target)
    if not domain:
        return list(stores)
    return [store for store in stores if store.domain == domain]


def preview_stores(stores: List[Store]) -> List[Dict[str, Any]]:
    """Describe how each configured domain sanitizes, for the debug endpoint."""
    return [
        {
            "raw": store.domain,
            "sanitized": sanitize_domain(store.domain),
            "valid": is_valid_domain(sanitize_domain(store.domain)),
            "token_ok": store.token.startswith(TOKEN_PREFIX),
        }
        for store in stores
    ]


def list_shops(stores: List[Store]) -> List[Dict[str, Any]]:
    """Public listing of configured shops (no credentials)."""
    return [
        {"id": index + 1, "handle": store.handle, "domain": store.domain}
        for index, store in enumerate(stores)
    ]


def configured_stores() -> List[Store]:
    """Stores from the SHOPIFY_STORES setting."""
    return parse_stores(Config.SHOPIFY_STORES)
