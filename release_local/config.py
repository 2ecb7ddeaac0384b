"""Configuration objects for release-local."""

from dataclasses import dataclass


@dataclass
class RenderConfig:
    """Configuration for the template renderer."""

    strict: bool = False
    """Rendering an undefined value fails instead of producing empty output."""

    max_include_depth: int = 1000
    """Maximum nesting of `include` calls before rendering fails."""

    annotate_checksums: bool = False
    """Stamp checksums of referenced ConfigMaps and Secrets onto workloads."""


@dataclass
class ManagerConfig:
    """Configuration for the ReleaseManager."""

    max_history: int = 0
    """Maximum number of revisions kept per release, 0 keeps all revisions."""

    default_timeout: float = 300.0
    """Deadline in seconds for an operation when the caller does not pass one."""

    wait: bool = False
    """Wait for applied resources to become ready before marking success."""

    apply_retries: int = 3
    """Attempts made for a cluster call failing with a transient error."""

    retry_backoff: float = 0.5
    """Initial backoff in seconds between retries of a transient error."""

    hook_timeout: float = 300.0
    """Maximum seconds to wait for a single hook to complete."""

    poll_interval: float = 0.1
    """Seconds between checks while waiting for a resource to be deleted."""
