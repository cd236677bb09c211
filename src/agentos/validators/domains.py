"""Network egress domain allow-list validation.

Domains are bare hostnames or wildcard-prefixed hostnames
(``*.googleapis.com``). They are validated by pattern, de-duplicated,
lower-cased, and merged with a fixed default allow-list when a sandbox
container is created.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from typing import Any

from agentos.errors import DomainValidationError

DOMAIN_PATTERN = re.compile(
    r"^(\*\.)?([a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$"
)

DEFAULT_ALLOWED_DOMAINS: tuple[str, ...] = (
    "registry.npmjs.org",
    "api.anthropic.com",
    "sentry.io",
    "statsig.anthropic.com",
    "statsig.com",
    "marketplace.visualstudio.com",
    "vscode.blob.core.windows.net",
    "update.code.visualstudio.com",
)


def validate_domain(domain: Any) -> str | None:
    """Validate a single domain name.

    Returns:
        None if valid, otherwise an error message
    """
    if not isinstance(domain, str) or not domain.strip():
        return "Domain is required"

    trimmed = domain.strip().lower()
    if not DOMAIN_PATTERN.match(trimmed):
        return (
            f"Invalid domain format: '{domain}'. Must be a valid domain name "
            "(e.g., 'example.com' or '*.googleapis.com')"
        )
    return None


def validate_domains(domains: Sequence[str] | None) -> list[str]:
    """Validate and normalize a caller-supplied allow-list.

    Args:
        domains: Raw domain strings

    Returns:
        Normalized (trimmed, lower-cased) domains in input order

    Raises:
        DomainValidationError: With a "Domain N: ..." message on the first
            invalid or duplicate entry
    """
    if domains is None:
        return []
    if isinstance(domains, (str, bytes)) or not isinstance(domains, Sequence):
        raise DomainValidationError("Domains must be a list")

    seen: set[str] = set()
    result: list[str] = []
    for index, domain in enumerate(domains, start=1):
        error = validate_domain(domain)
        if error:
            raise DomainValidationError(
                f"Domain {index}: {error}", details={"index": index}
            )
        normalized = domain.strip().lower()
        if normalized in seen:
            raise DomainValidationError(
                f"Domain {index}: Duplicate domain '{domain}'", details={"index": index}
            )
        seen.add(normalized)
        result.append(normalized)
    return result


def normalize_domains(domains: Iterable[str]) -> list[str]:
    """Trim, lower-case, and de-duplicate domains preserving order."""
    seen: set[str] = set()
    result: list[str] = []
    for domain in domains:
        normalized = domain.strip().lower()
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def merge_with_defaults(domains: Iterable[str]) -> list[str]:
    """Default allow-list followed by extra domains, de-duplicated."""
    return normalize_domains([*DEFAULT_ALLOWED_DOMAINS, *domains])


def parse_domains(raw: Any) -> list[str]:
    """Parse stored domains; empty on None or malformed input."""
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if not isinstance(raw, list):
        return []
    return [d for d in raw if isinstance(d, str) and d]


def serialize_domains(domains: Sequence[str] | None) -> list[str] | None:
    """Serialize domains for storage; None when empty."""
    if not domains:
        return None
    return list(domains)
