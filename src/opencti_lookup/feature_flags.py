"""Feature flags for gradual feature rollout.

Enables/disables features via environment variables without code changes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureFlags:
    """Feature flag configuration.

    All flags are loaded from environment variables with FF_ prefix.

    Usage:
        flags = FeatureFlags.load()
        if flags.marking_refresh:
            refresher.start()
    """

    # Test connectivity and token on startup
    startup_validation: bool = True

    # Keep the marking cache warm with a background task
    marking_refresh: bool = True

    @classmethod
    def load(cls) -> "FeatureFlags":
        """Load feature flags from environment variables.

        - FF_STARTUP_VALIDATION=false
        - FF_MARKING_REFRESH=false
        """
        def parse_bool(name: str, default: bool) -> bool:
            env_name = f"FF_{name.upper()}"
            value = os.environ.get(env_name, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes", "on")

        flags = cls(
            startup_validation=parse_bool("startup_validation", True),
            marking_refresh=parse_bool("marking_refresh", True),
        )

        enabled = [name for name, value in flags.to_dict().items() if value]
        if enabled:
            logger.debug(f"Feature flags enabled: {', '.join(enabled)}")

        return flags

    def to_dict(self) -> dict[str, bool]:
        return {
            "startup_validation": self.startup_validation,
            "marking_refresh": self.marking_refresh,
        }


_global_flags: FeatureFlags | None = None


def get_feature_flags() -> FeatureFlags:
    """Get or create global feature flags instance."""
    global _global_flags
    if _global_flags is None:
        _global_flags = FeatureFlags.load()
    return _global_flags


def reset_feature_flags() -> None:
    """Reset global feature flags (for testing)."""
    global _global_flags
    _global_flags = None
