"""Backend registry with discovery and lazy loading.

Backends are registered as ``module:Class`` specifications and imported only
when first requested, so optional backends (dask) never become hard
dependencies of radical.futures.
"""

from __future__ import annotations

import importlib
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class BackendRegistry:
    """Registry for execution backends with lazy loading and discovery."""

    def __init__(self):
        """Initialize the backend registry."""
        self._lock = threading.RLock()
        self._backends: dict[str, type] = {}
        self._failed_backends: dict[str, str] = {}  # Track failed import reasons

        # Backend specifications: name -> module_path:class_name
        self._backend_specs = {
            "sequential": (
                "radical.futures.backends.execution.sequential:"
                "SequentialExecutionBackend"
            ),
            "multisession": (
                "radical.futures.backends.execution.multisession:"
                "MultisessionExecutionBackend"
            ),
            "cluster": (
                "radical.futures.backends.execution.cluster:ClusterExecutionBackend"
            ),
            "batch": "radical.futures.backends.execution.batch:BatchExecutionBackend",
            # Optional backends (loaded on demand)
            "dask": (
                "radical.futures.backends.execution.dask_parallel:DaskExecutionBackend"
            ),
        }

    def get_backend(self, name: str) -> Optional[type]:
        """Get backend class by name, loading it if necessary.

        Args:
            name: Backend identifier (e.g., 'multisession', 'cluster', 'dask')

        Returns:
            Backend class if available and successfully loaded, None otherwise
        """
        with self._lock:
            return self._load(name.lower())

    def _load(self, name: str) -> Optional[type]:
        if name in self._backends:
            return self._backends[name]

        if name in self._failed_backends:
            error_msg = self._failed_backends[name]
            logger.debug(f"Backend '{name}' previously failed to load: {error_msg}")
            return None

        if name not in self._backend_specs:
            available = list(self._backend_specs.keys())
            logger.debug(f"Unknown backend '{name}'. Available: {available}")
            return None

        try:
            module_path, class_name = self._backend_specs[name].split(":")
            module = importlib.import_module(module_path)
            backend_class = getattr(module, class_name)

            from .execution.base import BaseExecutionBackend

            if not (isinstance(backend_class, type)
                    and issubclass(backend_class, BaseExecutionBackend)):
                error_msg = f"Class {class_name} is not a BaseExecutionBackend subclass"
                self._failed_backends[name] = error_msg
                logger.error(f"Backend '{name}' validation failed: {error_msg}")
                return None

            self._backends[name] = backend_class
            logger.debug(f"Successfully loaded backend '{name}' from {module_path}")
            return backend_class

        except ImportError as e:
            error_msg = f"Import error: {e}"
            self._failed_backends[name] = error_msg
            logger.debug(f"Backend '{name}' not available: {error_msg}")
            return None
        except AttributeError as e:
            error_msg = f"Class not found: {e}"
            self._failed_backends[name] = error_msg
            logger.error(f"Backend '{name}' load failed: {error_msg}")
            return None
        except ValueError as e:
            error_msg = f"Invalid backend specification: {e}"
            self._failed_backends[name] = error_msg
            logger.error(f"Backend '{name}' load failed: {error_msg}")
            return None

    def list_available(self) -> dict[str, bool]:
        """List all backends and their availability status.

        Returns:
            Dictionary mapping backend name to availability (True/False)
        """
        return {name: self.get_backend(name) is not None for name in self.names()}

    def names(self) -> list[str]:
        with self._lock:
            return list(dict.fromkeys([*self._backend_specs, *self._backends]))

    def list_loaded(self) -> dict[str, type]:
        """Get all currently loaded backends."""
        with self._lock:
            return self._backends.copy()

    def get_failure_reason(self, name: str) -> Optional[str]:
        """Get the reason why a backend failed to load.

        Args:
            name: Backend identifier

        Returns:
            Failure reason string if backend failed to load, None otherwise
        """
        return self._failed_backends.get(name.lower())

    def register_backend(self, name: str, backend_class: type) -> None:
        """Register a backend class directly (for testing or custom backends).

        Args:
            name: Backend identifier
            backend_class: Backend class to register

        Raises:
            TypeError: If backend_class is not a BaseExecutionBackend subclass
        """
        from .execution.base import BaseExecutionBackend

        if not (isinstance(backend_class, type)
                and issubclass(backend_class, BaseExecutionBackend)):
            raise TypeError("Backend class must be a BaseExecutionBackend subclass")

        name = name.lower()
        with self._lock:
            self._backends[name] = backend_class
            # Remove from failed backends if it was there
            self._failed_backends.pop(name, None)
        logger.debug(f"Registered backend '{name}': {backend_class}")

    def add_backend_spec(self, name: str, module_class_spec: str) -> None:
        """Add a new backend specification for lazy loading.

        Args:
            name: Backend identifier
            module_class_spec: Module and class specification in format
                "module.path:ClassName"
        """
        name = name.lower()
        with self._lock:
            self._backend_specs[name] = module_class_spec
            # Clear any cached results for this backend
            self._backends.pop(name, None)
            self._failed_backends.pop(name, None)
        logger.debug(f"Added backend spec '{name}': {module_class_spec}")


# Global registry instance
registry = BackendRegistry()
