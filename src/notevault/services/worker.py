"""Background execution and progress reporting for long-running operations."""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from notevault.exceptions import NoteVaultError, PasswordError
from notevault.observability import sanitize_error_message

logger = logging.getLogger(__name__)


class OperationStage(str, Enum):
    """Stages reported by imports and exports."""

    PARSING = "PARSING"
    SETTINGS = "SETTINGS"
    CATEGORIES = "CATEGORIES"
    ITEMS = "ITEMS"


@dataclass(frozen=True)
class ProgressReport:
    """Snapshot of an operation's progress."""

    stage: Optional[str] = None
    done: int = 0
    total: int = 0

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(self.done / self.total, 1.0)


ProgressObserver = Callable[[ProgressReport], None]


class ProgressTracker:
    """Thread-safe progress counter.

    Readers poll :meth:`report` from any thread; an optional observer is
    called with a fresh report on every change, on the worker thread.
    """

    def __init__(self, observer: Optional[ProgressObserver] = None):
        self._observer = observer
        self._lock = threading.Lock()
        self._stage: Optional[str] = None
        self._done = 0
        self._total = 0

    def start(self, stage: str, total: int = 0) -> None:
        """Enter a stage with its own count."""
        with self._lock:
            self._stage = stage
            self._done = 0
            self._total = total
        self._notify()

    def set_stage(self, stage: str) -> None:
        """Enter a stage, keeping the running count."""
        with self._lock:
            self._stage = stage
        self._notify()

    def set_total(self, total: int) -> None:
        with self._lock:
            self._total = total
        self._notify()

    def advance(self, count: int = 1) -> None:
        with self._lock:
            self._done += count
        self._notify()

    def report(self) -> ProgressReport:
        with self._lock:
            return ProgressReport(self._stage, self._done, self._total)

    def _notify(self) -> None:
        if self._observer is None:
            return
        report = self.report()
        try:
            self._observer(report)
        except Exception as e:
            logger.warning(f"Progress observer failed: {e}")


class OperationStatus(Enum):
    SUCCESS = "success"
    REJECTED = "rejected"  # e.g. a missing or wrong password
    ERROR = "error"


@dataclass
class OperationResult:
    """Outcome of a background operation, as delivered to callers."""

    operation: str
    status: OperationStatus
    message: Optional[str] = None
    summary: Any = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is OperationStatus.SUCCESS

    @classmethod
    def from_exception(cls, operation: str, error: Exception) -> "OperationResult":
        if isinstance(error, PasswordError):
            return cls(
                operation,
                OperationStatus.REJECTED,
                message=error.message,
                error_code=error.code.name,
            )
        if isinstance(error, NoteVaultError):
            return cls(
                operation,
                OperationStatus.ERROR,
                message=sanitize_error_message(error.message),
                error_code=error.code.name,
            )
        return cls(
            operation,
            OperationStatus.ERROR,
            message=sanitize_error_message(str(error)) or error.__class__.__name__,
        )


CompletionCallback = Callable[[OperationResult], None]


class BackgroundWorker:
    """Runs submitted operations one at a time on a dedicated thread."""

    def __init__(self, name: str = "notevault-worker"):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)

    def submit(
        self,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        callback: Optional[CompletionCallback] = None,
        **kwargs: Any,
    ) -> "Future[OperationResult]":
        """Queue ``fn(*args, **kwargs)``.

        The returned future always resolves to an OperationResult; failures
        are reported through its status rather than raised.
        """
        def run() -> OperationResult:
            try:
                summary = fn(*args, **kwargs)
                result = OperationResult(operation, OperationStatus.SUCCESS, summary=summary)
            except PasswordError as e:
                logger.info(f"{operation} rejected: {e.message}")
                result = OperationResult.from_exception(operation, e)
            except NoteVaultError as e:
                logger.error(f"{operation} failed: {e}")
                result = OperationResult.from_exception(operation, e)
            except Exception as e:
                logger.exception(f"{operation} failed unexpectedly")
                result = OperationResult.from_exception(operation, e)

            if callback is not None:
                try:
                    callback(result)
                except Exception as e:
                    logger.warning(f"Completion callback for {operation} failed: {e}")
            return result

        logger.debug(f"Queueing {operation} on {self.name}")
        return self._executor.submit(run)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "BackgroundWorker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
