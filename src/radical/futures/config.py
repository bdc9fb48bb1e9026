"""Process-wide settings for radical.futures.

Settings are read once from ``RADICAL_FUTURES_*`` environment variables and
validated with pydantic. They only provide defaults: every option can still be
given explicitly per future or per plan.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "RADICAL_FUTURES_"


class FutureSettings(BaseModel):
    """Defaults applied when a future or plan does not override them.

    Attributes:
        plan: Name of the backend used when no plan was set explicitly.
        seed: Root seed of the RNG stream manager. ``None`` draws one from
            ``os.urandom`` on first use.
        globals_max_size: Byte size above which an exported global triggers a
            ``GlobalsSizeWarning``.
        search_depth: How deep the dependency scanner descends into global
            functions to find the packages they use.
        grace_period: Seconds a superseded backend session may keep running
            futures before it is shut down forcefully.
        stdout: Whether standard output of work items is captured and relayed.
        rng_check: Whether unsafe use of the default RNG is reported.
    """

    plan: str = "sequential"
    seed: Optional[int] = None
    globals_max_size: int = Field(default=500 * 1024**2, ge=0)
    search_depth: int = Field(default=2, ge=0)
    grace_period: float = Field(default=300.0, ge=0)
    stdout: bool = True
    rng_check: bool = True

    @field_validator("plan")
    @classmethod
    def _lower_plan(cls, value: str) -> str:
        return value.strip().lower()

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> FutureSettings:
        """Build settings from ``RADICAL_FUTURES_*`` environment variables.

        Invalid values are logged and ignored, so a typo in the environment
        never prevents the package from being imported.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            key = f"{ENV_PREFIX}{name.upper()}"
            if key in environ:
                values[name] = environ[key]

        try:
            return cls(**values)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid {ENV_PREFIX}* settings: {e}")
            return cls()


_settings: Optional[FutureSettings] = None


def get_settings() -> FutureSettings:
    """Return the process-wide settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = FutureSettings.from_env()
    return _settings


def configure(**overrides) -> FutureSettings:
    """Replace selected settings for the rest of the process lifetime."""
    global _settings
    current = get_settings()
    _settings = FutureSettings(**{**current.model_dump(), **overrides})
    return _settings


def reset_settings() -> None:
    """Forget the cached settings (next access re-reads the environment)."""
    global _settings
    _settings = None
