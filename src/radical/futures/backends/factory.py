"""Factory for creating backend sessions with validated parameters."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from pydantic import ValidationError

from ..errors import FutureError
from .registry import registry

if TYPE_CHECKING:
    from .execution.base import BaseExecutionBackend

logger = logging.getLogger(__name__)


class BackendFactory:
    """Factory for creating backend sessions.

    Parameters are merged from ``config`` and keyword arguments (the latter
    win) and validated against the backend class's ``Params`` model before
    the session is constructed.
    """

    @staticmethod
    def _suggest_installation(backend_type: str) -> str:
        """Provide helpful installation suggestions for missing backends.

        Args:
            backend_type: Backend identifier

        Returns:
            Installation suggestion string
        """
        suggestions = {
            "dask": "pip install 'radical.futures[dask]'",
        }

        if backend_type in suggestions:
            return f"Try: {suggestions[backend_type]}"
        return ("register it with registry.register_backend() or "
                "registry.add_backend_spec()")

    @staticmethod
    def _unavailable(backend_type: str) -> ValueError:
        available_str = ", ".join(sorted(registry.names()))
        suggestion = BackendFactory._suggest_installation(backend_type)
        failure_reason = registry.get_failure_reason(backend_type)
        failure_info = f"\nReason: {failure_reason}" if failure_reason else ""

        return ValueError(
            f"Backend '{backend_type}' is not available.\n"
            f"Available backends: {available_str}\n"
            f"Installation hint: {suggestion}{failure_info}"
        )

    @staticmethod
    def validate_params(backend_type: str,
                        config: Optional[dict[str, Any]] = None,
                        **kwargs):
        """Validate parameters for a backend without creating it.

        Returns:
            The backend's ``Params`` instance.

        Raises:
            ValueError: If the backend is unknown or the parameters invalid.
        """
        backend_class = registry.get_backend(backend_type)
        if backend_class is None:
            raise BackendFactory._unavailable(backend_type)

        values = {**(config or {}), **kwargs}
        try:
            return backend_class.Params(**values)
        except ValidationError as e:
            raise ValueError(
                f"Invalid parameters for backend '{backend_type}': {e}") from e

    @staticmethod
    def create_backend(
        backend_type: str,
        config: Optional[dict[str, Any]] = None,
        **kwargs,
    ) -> BaseExecutionBackend:
        """Create and initialize a backend session.

        Args:
            backend_type: Backend identifier ('sequential', 'multisession',
                'cluster', 'batch', 'dask', ...)
            config: Backend parameters as a dictionary
            **kwargs: Backend parameters, overriding ``config``

        Returns:
            Initialized backend instance

        Raises:
            ValueError: If the backend is not available or the parameters
                do not validate
            RuntimeError: If backend initialization fails
        """
        params = BackendFactory.validate_params(backend_type, config, **kwargs)
        backend_class = registry.get_backend(backend_type)

        try:
            logger.debug(f"Creating backend '{backend_type}' with params: {params!r}")
            backend = backend_class(params)
        except FutureError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize backend '{backend_type}': {e}")
            raise RuntimeError(
                f"Failed to initialize backend '{backend_type}': {e}"
            ) from e

        logger.info(f"Successfully created and initialized '{backend_type}' backend")
        return backend

    @staticmethod
    def list_available_backends() -> dict[str, dict[str, Any]]:
        """List all backends with detailed information.

        Returns:
            Dictionary with backend info including availability and failure reasons
        """
        info = {}
        for name in registry.names():
            backend_class = registry.get_backend(name)
            failure_reason = registry.get_failure_reason(name)

            info[name] = {
                "available": backend_class is not None,
                "class": backend_class.__name__ if backend_class else None,
                "failure_reason": failure_reason,
                "installation_hint": (
                    BackendFactory._suggest_installation(name)
                    if backend_class is None
                    else None
                ),
            }

        return info


# Convenience factory instance
factory = BackendFactory()
