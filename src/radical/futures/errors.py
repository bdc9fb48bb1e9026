class FutureError(Exception):
    """Base class of all errors raised by radical.futures itself."""


class ScanError(FutureError):
    """
    Exception raised when the globals of a work item cannot be determined.

    Raised at future creation time, e.g. for source code that does not parse
    or for an explicit globals list naming a variable that does not exist.
    """

    def __init__(self, message, names=None):
        super().__init__(message)
        self.names = list(names or [])


class DependencyTransferError(FutureError):
    """
    Exception raised when a binding required by a work item cannot be copied
    or serialized for transfer to the execution context.
    """

    def __init__(self, message, name=None, root_cause=None):
        """
        Args:
            message (str): Human-readable error message
            name (str, optional): Name of the offending binding, if known
            root_cause (Exception, optional): The original copy/pickle error
        """
        super().__init__(message)
        self.name = name
        self.root_cause = root_cause

        if root_cause:
            self.__cause__ = root_cause


class EvaluationError(FutureError):
    """
    Stand-in for an exception raised by a work item that could not itself be
    transferred back to the caller (e.g. an unpicklable exception class).

    Carries the original exception type name, its message and the traceback
    text as formatted in the execution context.
    """

    def __init__(self, message, exc_type=None, remote_traceback=None):
        super().__init__(message)
        self.exc_type = exc_type
        self.remote_traceback = remote_traceback


class RemoteTraceback(Exception):
    """Traceback text of an error raised in another process or host."""

    def __init__(self, tb: str):
        self.tb = tb

    def __str__(self):
        return self.tb


class BackendConnectivityError(FutureError):
    """
    Exception raised when the execution context of a future was lost, e.g. a
    worker process died or a cluster connection dropped before a result was
    delivered.
    """

    def __init__(self, message, worker=None, root_cause=None):
        super().__init__(message)
        self.worker = worker
        self.root_cause = root_cause

        if root_cause:
            self.__cause__ = root_cause


class JobFailedError(BackendConnectivityError):
    """A batch job terminated without producing a result."""

    def __init__(self, message, job_id=None, job_state=None, root_cause=None):
        super().__init__(message, worker=job_id, root_cause=root_cause)
        self.job_id = job_id
        self.job_state = job_state


class CancellationError(FutureError):
    """Raised when the value of a cancelled future is requested."""


class FutureStateError(FutureError):
    """Raised on a programming error such as an invalid state transition."""


class RngSafetyWarning(UserWarning):
    """
    Warning emitted when a work item used the default random number generator
    without a parallel-safe RNG stream (``seed=True``).
    """


class GlobalsSizeWarning(UserWarning):
    """Warning emitted when a global exported to a work item is large."""
