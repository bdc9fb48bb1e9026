from enum import Enum
from typing import Dict, Any, Union, Optional


class FutureState(Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    RUNNING = "RUNNING"
    RESOLVED = "RESOLVED"
    ERRORED = "ERRORED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (FutureState.RESOLVED, FutureState.ERRORED,
                        FutureState.CANCELLED)


# allowed Future state transitions
TRANSITIONS = {
    FutureState.CREATED: {FutureState.SUBMITTED, FutureState.CANCELLED},
    FutureState.SUBMITTED: {FutureState.RUNNING, FutureState.RESOLVED,
                            FutureState.ERRORED, FutureState.CANCELLED},
    FutureState.RUNNING: {FutureState.RESOLVED, FutureState.ERRORED,
                          FutureState.CANCELLED},
    FutureState.RESOLVED: set(),
    FutureState.ERRORED: set(),
    FutureState.CANCELLED: set(),
}


class HandleStatus(Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


class JobMainStates(Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class StateMapper:
    """
    StateMapper maps the native job states reported by an external scheduler
    (e.g. 'slurm', 'sge') onto the small set of states the batch backend
    reasons about. Schedulers register their state codes once; a mapper
    instance then converts in both directions.

    Attributes:
        _backend_registry (Dict[str, Dict[JobMainStates, Any]]): Class-level
            registry of scheduler names to their state mappings.
    Args:
        backend (str): The scheduler identifier, e.g. 'slurm'.
    Raises:
        ValueError: If the specified scheduler is not registered.
    """

    _backend_registry: Dict[str, Dict[JobMainStates, Any]] = {}

    def __init__(self, backend: str):
        self.backend_name: str = backend.lower()

        if self.backend_name not in self._backend_registry:
            raise ValueError(
                f"Scheduler '{self.backend_name}' not registered. "
                f"Available schedulers: {list(self._backend_registry.keys())}")

        self._state_map = self._backend_registry[self.backend_name]
        self._reverse_map: Dict[Any, JobMainStates] = {}
        for main_state, native in self._state_map.items():
            for code in (native if isinstance(native, tuple) else (native,)):
                self._reverse_map[code] = main_state

    @classmethod
    def register_backend_states(
        cls,
        backend: str,
        pending_state: Any,
        running_state: Any,
        done_state: Any,
        failed_state: Any,
        canceled_state: Any) -> None:
        """
        Registers the state codes of a scheduler.

        Each state may be a single code or a tuple of codes, since most
        schedulers report several native states (e.g. 'CG' and 'CD' in slurm)
        for what the batch backend treats as one.
        """
        cls._backend_registry[backend.lower()] = {
            JobMainStates.PENDING: pending_state,
            JobMainStates.RUNNING: running_state,
            JobMainStates.DONE: done_state,
            JobMainStates.FAILED: failed_state,
            JobMainStates.CANCELED: canceled_state}

    @classmethod
    def register_backend_states_with_defaults(cls, backend: str):

        return cls.register_backend_states(backend,
                                           pending_state=JobMainStates.PENDING.value,
                                           running_state=JobMainStates.RUNNING.value,
                                           done_state=JobMainStates.DONE.value,
                                           failed_state=JobMainStates.FAILED.value,
                                           canceled_state=JobMainStates.CANCELED.value)

    def __getattr__(self, name: str) -> Any:
        """Access states directly like mapper.DONE"""
        try:
            main_state = JobMainStates[name]
            return self._state_map[main_state]
        except KeyError:
            raise AttributeError(f"'{self.__class__.__name__}' has no state '{name}'")

    def to_main_state(self, backend_state: Any,
                      default: Optional[JobMainStates] = None) -> JobMainStates:
        """Convert a native state code to a main state"""
        try:
            return self._reverse_map[backend_state]
        except KeyError:
            if default is not None:
                return default
            raise ValueError(f"Unknown {self.backend_name} state: {backend_state}")

    def get_backend_state(self, main_state: Union[JobMainStates, str]) -> Any:
        """Get the native state code(s) for a main state"""
        if isinstance(main_state, str):
            main_state = JobMainStates[main_state]
        return self._state_map[main_state]

    @property
    def terminal_states(self) -> tuple:
        """Main states after which a job will not change anymore"""
        return (JobMainStates.DONE, JobMainStates.FAILED, JobMainStates.CANCELED)
