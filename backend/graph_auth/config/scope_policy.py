"""
Graph permission policy loader.

Loads required/recommended scopes and capability buckets from
config/scope_policy.yml, the single source of truth for what the
service needs from a granted credential.

Consumers:
  - PermissionDiagnosticsService: permission_level and recommendations
  - OAuthService: scopes requested in the authorization dialog

Usage:
    from graph_auth.config.scope_policy import get_scope_policy_loader

    loader = get_scope_policy_loader()
    required = loader.required_scopes
    buckets = loader.capability_buckets
"""

import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

_FALLBACK_INSUFFICIENT_BELOW = 50
_FALLBACK_SUFFICIENT_FROM = 75


class ScopePolicyLoader:
    """
    Thread-safe singleton loader for config/scope_policy.yml.
    """

    _instance: Optional["ScopePolicyLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._required: List[str] = []
        self._recommended: List[str] = []
        self._authorize: List[str] = []
        self._buckets: Optional[List[Tuple[str, ...]]] = None
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    # ------------------------------------------------------------------
    # Config resolution
    # ------------------------------------------------------------------

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(os.getenv("SCOPE_POLICY_PATH", "")) if os.getenv("SCOPE_POLICY_PATH") else None,
            Path(__file__).parent / "scope_policy.yml",
            Path(os.getcwd()) / "config" / "scope_policy.yml",
        ]

        for p in candidates:
            if p is None:
                continue
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"scope_policy.yml not found in: {[str(p) for p in candidates if p]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            logger.info("Loading scope policy from %s", path)

            with open(path, "r") as f:
                self._raw = yaml.safe_load(f) or {}

            self._required = list(self._raw.get("required_scopes", []))
            self._recommended = list(self._raw.get("recommended_scopes", []))
            self._authorize = list(
                self._raw.get("authorize_scopes")
                or self._required + self._recommended
            )

            buckets = self._raw.get("capability_buckets")
            if buckets:
                self._buckets = [tuple(b) for b in buckets.values()]
            else:
                self._buckets = None

            logger.info(
                "Loaded scope policy: %d required, %d recommended",
                len(self._required),
                len(self._recommended),
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def required_scopes(self) -> List[str]:
        return list(self._required)

    @property
    def recommended_scopes(self) -> List[str]:
        return list(self._recommended)

    @property
    def authorize_scopes(self) -> List[str]:
        return list(self._authorize)

    @property
    def capability_buckets(self) -> Optional[List[Tuple[str, ...]]]:
        """Configured buckets, or None to use one bucket per required scope."""
        return list(self._buckets) if self._buckets is not None else None

    @property
    def thresholds(self) -> Tuple[int, int]:
        """(insufficient_below, sufficient_from) permission_level cut-offs."""
        cfg = self._raw.get("thresholds", {}) or {}
        return (
            int(cfg.get("insufficient_below", _FALLBACK_INSUFFICIENT_BELOW)),
            int(cfg.get("sufficient_from", _FALLBACK_SUFFICIENT_FROM)),
        )


# ------------------------------------------------------------------
# Module-level accessors
# ------------------------------------------------------------------

def get_scope_policy_loader(
    config_path: Optional[str] = None,
) -> ScopePolicyLoader:
    """Return the singleton ScopePolicyLoader."""
    return ScopePolicyLoader(config_path)


def reset_scope_policy_loader() -> None:
    """Reset singleton (for tests only)."""
    ScopePolicyLoader._instance = None
