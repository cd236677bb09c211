"""Resource validators for sandbox configuration.

Pure functions that check extra mounts and egress domain allow-lists
against security denylists before any resource is created.
"""

from agentos.validators.domains import (
    DEFAULT_ALLOWED_DOMAINS,
    merge_with_defaults,
    normalize_domains,
    parse_domains,
    serialize_domains,
    validate_domain,
    validate_domains,
)
from agentos.validators.mounts import (
    BLOCKED_CONTAINER_PATHS,
    BLOCKED_HOST_PATHS,
    MountConfig,
    parse_mounts,
    serialize_mounts,
    validate_container_path,
    validate_host_path,
    validate_mounts,
)

__all__ = [
    # Mounts
    "BLOCKED_CONTAINER_PATHS",
    "BLOCKED_HOST_PATHS",
    "MountConfig",
    "parse_mounts",
    "serialize_mounts",
    "validate_container_path",
    "validate_host_path",
    "validate_mounts",
    # Domains
    "DEFAULT_ALLOWED_DOMAINS",
    "merge_with_defaults",
    "normalize_domains",
    "parse_domains",
    "serialize_domains",
    "validate_domain",
    "validate_domains",
]
