# ct2aria_core.py
# CT2ARIA CORE ENGINE
# Version: 1.0.0

"""
CT2ARIA CORE ENGINE
===================
A thread-safe dispatcher that walks remote share trees and hands every
discovered file to an external download engine.

COMPONENTS:
- Task: one-shot completion signal with completion hooks
- CompletionTracker: per-root set of finished relative paths
- RewalkSignal: single-slot pending-restart flag
- RateLimiter: paced gate for outbound resolution calls
- RetryPolicy: exponential backoff around fallible remote calls
- Dispatcher: bounded intake queue drained by a fixed worker pool
- WalkCoordinator: walk driver with the abort/re-walk protocol
- CompletionJournal: SQLite WAL record of finished files (resume/status)
- Ct2AriaCore: facade wiring everything for the CLI
"""

import posixpath
import queue
import sqlite3
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

# =========================================================
# TUNABLE CONSTANTS
# =========================================================

# Intake queue capacity and default worker count
DEFAULT_CONCURRENCY = 5

# Resolution calls per second
DEFAULT_RATE_LIMIT = 30.0

# Seconds between two status queries of the same job
POLL_INTERVAL_SECONDS = 1.0

# How long an idle worker blocks on the intake queue before re-checking stop
WORKER_POLL_TIMEOUT = 0.5

# How long a blocked enqueue waits before re-checking abort/stop
ENQUEUE_POLL_INTERVAL = 0.1

# Attempt budgets (first call included)
RESOLVE_MAX_ATTEMPTS = 4
WALK_MAX_ATTEMPTS = 11

# Exponential backoff shape
BACKOFF_INITIAL_SECONDS = 0.5
BACKOFF_MULTIPLIER = 1.5
BACKOFF_MAX_SECONDS = 60.0

# Re-walk passes allowed once every root has been walked
MAX_DRAIN_PASSES = 3

# In-memory log ring size
LOG_BUFFER_SIZE = 50000

# Journal file written into the output directory
STATE_DB_NAME = "ct2aria_state.db"

# =========================================================
# ENGINE VOCABULARY
# =========================================================
JOB_ACTIVE = "active"
JOB_WAITING = "waiting"
JOB_PAUSED = "paused"
JOB_ERROR = "error"
JOB_COMPLETE = "complete"
JOB_REMOVED = "removed"

# Submission options understood by the engine
OPTION_OUTPUT = "out"
OPTION_DIRECTORY = "dir"
OPTION_USER_AGENT = "user-agent"

FILE_KIND_FILE = "file"
FILE_KIND_FOLDER = "folder"

TASK_PENDING = "pending"
TASK_DONE = "done"

ROOT_WALKING = "walking"
ROOT_ABORTED = "aborted"
ROOT_TRANSIENT_ERROR = "transient_error"
ROOT_FINISHED = "finished"
ROOT_FAILED = "failed"
ROOT_CANCELLED = "cancelled"

# =========================================================
# DATABASE SCHEMA
# =========================================================
DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    root_id TEXT NOT NULL,
    path TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    job_id TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT,
    PRIMARY KEY (root_id, path)
);

CREATE INDEX IF NOT EXISTS idx_status ON files(status);
CREATE INDEX IF NOT EXISTS idx_root_id ON files(root_id);
"""


# =========================================================
# ERRORS
# =========================================================
class Ct2AriaError(Exception):
    """Base class for every error raised by the engine."""


class ConfigError(Ct2AriaError):
    """Invalid configuration, detected before any work starts."""


class WalkAborted(Ct2AriaError):
    """Raised by a walker when its callback asked it to stop."""


class EmptyResultError(Ct2AriaError):
    """A remote call succeeded but returned nothing usable."""


class TaskFailed(Ct2AriaError):
    """The download engine reported a failed job."""


class SubmissionError(Ct2AriaError):
    """Submitting a job to the engine failed. Not recoverable."""


class RootFailed(Ct2AriaError):
    """A root could not be walked within its retry budget."""


# =========================================================
# DATA MODEL
# =========================================================
@dataclass(frozen=True)
class RemoteFile:
    """
    One entry of a remote listing.

    Size and date are kept as the listing shows them; they are only
    used for display.
    """
    id: str
    name: str
    size: str = ""
    date: str = ""
    kind: str = FILE_KIND_FILE

    @property
    def is_folder(self) -> bool:
        return self.kind == FILE_KIND_FOLDER


@dataclass(frozen=True)
class JobStatus:
    """Status of an engine job as returned by ``poll``."""
    status: str
    error_message: str = ""


@dataclass(frozen=True)
class DispatchConfig:
    """
    Immutable run configuration, built once at startup.

    Args:
        concurrency: Intake queue capacity (C)
        workers: Worker loop count (W), defaults to ``concurrency``
        output_dir: Destination directory handed to the engine
        rate_limit: Resolution calls per second
        poll_interval: Seconds between job status queries
        resolve_attempts: Attempt budget for URI resolution
        walk_attempts: Attempt budget for transient walk failures of one root
        backoff_initial: First backoff delay in seconds
        backoff_multiplier: Growth factor between delays
        backoff_max: Upper bound of a single delay
        user_agent: Optional user agent forwarded to the engine
        max_drain_passes: Re-walk passes after every root has been walked
        enqueue_poll_interval: Re-check period of a blocked enqueue
    """
    concurrency: int = DEFAULT_CONCURRENCY
    workers: Optional[int] = None
    output_dir: str = ""
    rate_limit: float = DEFAULT_RATE_LIMIT
    poll_interval: float = POLL_INTERVAL_SECONDS
    resolve_attempts: int = RESOLVE_MAX_ATTEMPTS
    walk_attempts: int = WALK_MAX_ATTEMPTS
    backoff_initial: float = BACKOFF_INITIAL_SECONDS
    backoff_multiplier: float = BACKOFF_MULTIPLIER
    backoff_max: float = BACKOFF_MAX_SECONDS
    user_agent: Optional[str] = None
    max_drain_passes: int = MAX_DRAIN_PASSES
    enqueue_poll_interval: float = ENQUEUE_POLL_INTERVAL

    @property
    def worker_count(self) -> int:
        return self.concurrency if self.workers is None else self.workers

    def validate(self) -> "DispatchConfig":
        """
        Reject values the engine cannot run with.

        Returns:
            self, so construction and validation can be chained

        Raises:
            ConfigError: on the first invalid field
        """
        if self.concurrency <= 0:
            raise ConfigError("concurrent must be greater than 0")
        if self.worker_count <= 0:
            raise ConfigError("workers must be greater than 0")
        if self.rate_limit <= 0:
            raise ConfigError("rate limit must be greater than 0")
        if self.poll_interval <= 0:
            raise ConfigError("poll interval must be greater than 0")
        if self.resolve_attempts < 1 or self.walk_attempts < 1:
            raise ConfigError("attempt budgets must be at least 1")
        if self.backoff_multiplier < 1:
            raise ConfigError("backoff multiplier must be at least 1")
        if self.max_drain_passes < 0:
            raise ConfigError("drain passes must not be negative")
        return self

    def resolve_retry_policy(self) -> "RetryPolicy":
        return RetryPolicy(self.resolve_attempts, self.backoff_initial,
                           self.backoff_multiplier, self.backoff_max)

    def walk_retry_policy(self) -> "RetryPolicy":
        return RetryPolicy(self.walk_attempts, self.backoff_initial,
                           self.backoff_multiplier, self.backoff_max)


# =========================================================
# EVENT LOG
# =========================================================
class EventLog:
    """
    Shared log sink: bounded in-memory stream plus an optional debug file.

    Lines look like ``[12:00:01] [WARNING] message``. The CLI reads the
    stream incrementally through ``get_logs``.
    """

    def __init__(self, log_file: Optional[str] = None, max_lines: int = LOG_BUFFER_SIZE):
        self.lines = deque(maxlen=max_lines)
        self.count = 0
        self.lock = threading.Lock()
        self.log_file = Path(log_file) if log_file else None
        if self.log_file and self.log_file.exists():
            self.log_file.unlink()

    def log(self, message: str, level: str = "info"):
        """
        Record one message.

        Args:
            message: Log message
            level: info, success, warning or error
        """
        timestamp = datetime.now().strftime("%H:%M:%S")
        formatted = f"[{timestamp}] [{level.upper()}] {message}"

        with self.lock:
            self.lines.append(formatted)
            self.count += 1
            if self.log_file:
                try:
                    with open(self.log_file, 'a', encoding='utf-8') as f:
                        f.write(formatted + "\n")
                except Exception:
                    pass

    def get_logs(self, from_index: int = 0) -> Tuple[List[str], int]:
        """
        Get log lines recorded since ``from_index``.

        Returns:
            Tuple of (log_lines, new_index)
        """
        with self.lock:
            dropped = self.count - len(self.lines)
            start = max(from_index - dropped, 0)
            return list(self.lines)[start:], self.count


# =========================================================
# TASK
# =========================================================
class Task:
    """
    One file's trip from discovery to a terminal engine state.

    The done signal fires exactly once. The poll loop and external
    removal detection may both try to finish the same task; only the
    first ``set_done`` has any effect.
    """

    def __init__(self, file: RemoteFile, path_prefix: str, *hooks: Callable[["Task"], None]):
        self.file = file
        self.path_prefix = path_prefix
        self.job_id: Optional[str] = None
        self.error: Optional[BaseException] = None
        self.done = threading.Event()
        self._hooks = list(hooks)
        self._state = TASK_PENDING
        self._state_lock = threading.Lock()

    @property
    def relative_path(self) -> str:
        return posixpath.join(self.path_prefix, self.file.name)

    @property
    def is_done(self) -> bool:
        return self.done.is_set()

    def set_done(self, error: Optional[BaseException] = None) -> bool:
        """
        Finalize the task and run its hooks.

        Args:
            error: Terminal error, None on success

        Returns:
            True for the call that finalized the task, False for every later call
        """
        with self._state_lock:
            if self._state != TASK_PENDING:
                return False
            self._state = TASK_DONE

        self.error = error
        self.done.set()
        for hook in self._hooks:
            hook(self)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done.wait(timeout)

    def __repr__(self):
        return f"Task({self.relative_path!r}, job_id={self.job_id!r}, state={self._state})"


# =========================================================
# COMPLETION TRACKING
# =========================================================
class CompletionTracker:
    """Thread-safe set of relative paths finished under one root."""

    def __init__(self, paths: Iterable[str] = ()):
        self._paths = set(paths)
        self._lock = threading.Lock()

    def add(self, path: str):
        with self._lock:
            self._paths.add(path)

    def discard(self, path: str):
        with self._lock:
            self._paths.discard(path)

    def seed(self, paths: Iterable[str]):
        with self._lock:
            self._paths.update(paths)

    def snapshot(self) -> List[str]:
        with self._lock:
            return sorted(self._paths)

    def __contains__(self, path: str) -> bool:
        with self._lock:
            return path in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)


class RewalkSignal:
    """
    Single-slot pending-restart flag.

    ``raise_signal`` sets the flag only if it is clear, ``consume``
    clears it. Redundant raises between two consumes collapse into one.
    """

    def __init__(self):
        self._pending = False
        self._lock = threading.Lock()

    def raise_signal(self) -> bool:
        with self._lock:
            if self._pending:
                return False
            self._pending = True
            return True

    def consume(self) -> bool:
        with self._lock:
            was_pending = self._pending
            self._pending = False
            return was_pending

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending


# =========================================================
# TIMING DISCIPLINE
# =========================================================
class RateLimiter:
    """
    Paced gate: one token every ``1 / rate`` seconds, no burst.

    Idle time is not banked, so a caller after a long pause passes
    immediately and the next one waits a full interval.
    """

    def __init__(self, rate: float, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ConfigError("rate limit must be greater than 0")
        self.interval = 1.0 / rate
        self._clock = clock
        self._next_slot = 0.0
        self._lock = threading.Lock()

    def acquire(self, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Block until the next token.

        Args:
            stop_event: Cancels the wait when set

        Returns:
            True when a token was taken, False when cancelled
        """
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.interval

        wait = slot - now
        if stop_event is not None:
            if wait <= 0:
                return not stop_event.is_set()
            return not stop_event.wait(wait)
        if wait > 0:
            time.sleep(wait)
        return True


class RetryPolicy:
    """
    Exponential backoff with a bounded number of attempts.

    Delays grow by ``multiplier`` from ``initial_delay`` and are capped
    at ``max_delay``. ``max_attempts`` counts the first call too.
    """

    def __init__(self, max_attempts: int, initial_delay: float = BACKOFF_INITIAL_SECONDS,
                 multiplier: float = BACKOFF_MULTIPLIER, max_delay: float = BACKOFF_MAX_SECONDS,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self._sleep = sleep

    def delays(self) -> Iterator[float]:
        """
        Yield the ``max_attempts - 1`` backoff delays in order.

        Delays grow by ``multiplier`` and then hold at ``max_delay`` for
        the remaining attempts.
        """
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.multiplier

    def call(self, operation: Callable[[], Any], require_result: bool = False,
             stop_event: Optional[threading.Event] = None) -> Any:
        """
        Run ``operation`` until it succeeds or the attempts run out.

        Args:
            operation: Zero-argument callable
            require_result: Treat an empty or None result as a failure
            stop_event: Cuts a backoff sleep short; the last error is raised

        Returns:
            The first acceptable result

        Raises:
            The last exception raised by ``operation`` (or EmptyResultError)
        """
        delays = self.delays()
        while True:
            try:
                result = operation()
                if require_result and not result:
                    raise EmptyResultError("operation returned an empty result")
                return result
            except Exception:
                delay = next(delays, None)
                if delay is None:
                    raise
                if stop_event is not None:
                    if stop_event.wait(delay):
                        raise
                else:
                    self._sleep(delay)


# =========================================================
# DISPATCHER
# =========================================================
class Dispatcher:
    """
    Bounded intake queue plus a fixed pool of worker loops.

    Each worker: dequeue, rate-limit, resolve URIs under the retry
    policy, submit to the engine, then poll until the job is terminal.
    At most ``concurrency + workers`` tasks are enqueued but unfinished.
    """

    def __init__(self, config: DispatchConfig,
                 resolve_uris: Callable[[RemoteFile], Dict[str, str]],
                 engine: Any,
                 rate_limiter: Optional[RateLimiter] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 event_log: Optional[EventLog] = None,
                 stop_event: Optional[threading.Event] = None):
        """
        Args:
            config: Validated run configuration
            resolve_uris: file -> {mirror: uri}
            engine: Object with ``submit(uris, options)`` and ``poll(job_id)``
            rate_limiter: Gate for resolution calls
            retry_policy: Policy applied around ``resolve_uris``
            event_log: Shared log sink
            stop_event: Process-wide cancellation signal
        """
        self.config = config
        self.resolve_uris = resolve_uris
        self.engine = engine
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit)
        self.retry_policy = retry_policy or config.resolve_retry_policy()
        self.event_log = event_log or EventLog()
        self.stop_event = stop_event or threading.Event()

        # ===== THREADING PRIMITIVES =====
        self.task_queue: "queue.Queue[Task]" = queue.Queue(maxsize=config.concurrency)
        self.executor = None
        self.worker_futures = []

        # ===== STATE TRACKING =====
        self.stats_lock = threading.Lock()
        self.in_flight = 0
        self.submitted = 0
        self.completed = 0
        self.failed = 0
        self.removed = 0
        self.resolve_failures = 0
        self.fatal_error: Optional[SubmissionError] = None

    def start(self):
        """Launch the worker pool. Calling it twice is a no-op."""
        if self.executor is not None:
            return
        workers = self.config.worker_count
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ct2aria-worker")
        self.worker_futures = [self.executor.submit(self._run_worker) for _ in range(workers)]
        self.event_log.log(f"Dispatcher started: {workers} workers, queue capacity {self.config.concurrency}", "info")

    def enqueue(self, task: Task, abort: Optional[Callable[[], bool]] = None) -> bool:
        """
        Put a task on the intake queue, blocking while it is full.

        Args:
            task: Task to dispatch
            abort: Checked whenever the put would block; True gives up

        Returns:
            True if queued, False if aborted or stopped
        """
        while not self.stop_event.is_set():
            try:
                self.task_queue.put_nowait(task)
                return True
            except queue.Full:
                pass
            if abort is not None and abort():
                return False
            try:
                self.task_queue.put(task, timeout=self.config.enqueue_poll_interval)
                return True
            except queue.Full:
                continue
        return False

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued task has been processed.

        Returns:
            True when drained, False on stop or timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.stop_event.is_set():
            if self.task_queue.unfinished_tasks == 0:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            self.stop_event.wait(self.config.enqueue_poll_interval)
        return False

    def stop(self):
        self.stop_event.set()

    def wait(self):
        """
        Wait for every worker to exit. Call ``stop`` first.

        Raises:
            SubmissionError: if a worker hit a fatal submission failure
        """
        if self.executor is not None:
            self.executor.shutdown(wait=True)
            self.executor = None
        if self.fatal_error is not None:
            raise self.fatal_error

    def shutdown(self):
        self.stop()
        self.wait()

    # ===== WORKER LOOP =====
    def _run_worker(self):
        try:
            self._worker_loop()
        except SubmissionError as e:
            with self.stats_lock:
                if self.fatal_error is None:
                    self.fatal_error = e
            self.event_log.log(f"Fatal: {e}", "error")
            self.stop_event.set()
            raise

    def _worker_loop(self):
        while not self.stop_event.is_set():
            try:
                task = self.task_queue.get(timeout=WORKER_POLL_TIMEOUT)
            except queue.Empty:
                continue

            with self.stats_lock:
                self.in_flight += 1
            try:
                self._process(task)
            except SubmissionError:
                raise
            except Exception as e:
                self.event_log.log(f"Worker error: {e}", "error")
                if task.set_done(e):
                    with self.stats_lock:
                        self.failed += 1
            finally:
                with self.stats_lock:
                    self.in_flight -= 1
                self.task_queue.task_done()

    def _process(self, task: Task):
        self.event_log.log(f"File: {task.relative_path}, Size: {task.file.size}", "info")

        if not self.rate_limiter.acquire(self.stop_event):
            return

        try:
            uris = self.retry_policy.call(lambda: self.resolve_uris(task.file),
                                          require_result=True, stop_event=self.stop_event)
        except Exception as e:
            if self.stop_event.is_set():
                return
            self.event_log.log(
                f"Failed to get download url after max retry, file: {task.relative_path}, err: {e}", "error")
            with self.stats_lock:
                self.resolve_failures += 1
            task.set_done(e)
            return

        try:
            job_id = self.engine.submit(list(uris.values()), self._job_options(task))
        except Exception as e:
            raise SubmissionError(f"failed to submit {task.relative_path}: {e}") from e

        task.job_id = job_id
        with self.stats_lock:
            self.submitted += 1
        self.event_log.log(f"Submitted: {task.relative_path} -> {job_id}", "info")
        self._wait_task(task)

    def _job_options(self, task: Task) -> Dict[str, str]:
        options = {OPTION_OUTPUT: task.relative_path}
        if self.config.output_dir:
            options[OPTION_DIRECTORY] = self.config.output_dir
        if self.config.user_agent:
            options[OPTION_USER_AGENT] = self.config.user_agent
        return options

    def _wait_task(self, task: Task):
        """Poll the engine until the job is terminal or the run is stopped."""
        while not self.stop_event.wait(self.config.poll_interval):
            try:
                status = self.engine.poll(task.job_id)
            except Exception as e:
                # The job is gone; it may have finished or been deleted.
                self.event_log.log(f"Job {task.job_id} unknown ({e}), treating as removed: {task.relative_path}", "warning")
                with self.stats_lock:
                    self.removed += 1
                task.set_done(None)
                return

            if status.status == JOB_COMPLETE:
                with self.stats_lock:
                    self.completed += 1
                self.event_log.log(f"✓ Downloaded: {task.relative_path}", "success")
                task.set_done(None)
                return
            if status.status == JOB_REMOVED:
                with self.stats_lock:
                    self.removed += 1
                self.event_log.log(f"Job {task.job_id} removed externally: {task.relative_path}", "warning")
                task.set_done(None)
                return
            if status.status == JOB_ERROR:
                with self.stats_lock:
                    self.failed += 1
                message = status.error_message or "download failed"
                self.event_log.log(f"✗ Failed: {task.relative_path} - {message}", "error")
                task.set_done(TaskFailed(message))
                return

    def get_stats(self) -> Dict[str, Any]:
        with self.stats_lock:
            return {
                "queue_depth": self.task_queue.qsize(),
                "in_flight": self.in_flight,
                "submitted": self.submitted,
                "completed": self.completed,
                "failed": self.failed,
                "removed": self.removed,
                "resolve_failures": self.resolve_failures,
                "workers": self.config.worker_count,
                "fatal": self.fatal_error is not None,
            }


# =========================================================
# COMPLETION JOURNAL
# =========================================================
class CompletionJournal:
    """
    SQLite (WAL) record of per-file outcomes.

    Lets ``resume`` skip files finished in an earlier run and backs the
    ``status`` command. Writes are serialized; each call opens its own
    connection so hooks may record from any worker thread.
    """

    def __init__(self, db_path: str, event_log: Optional[EventLog] = None):
        self.db_path = Path(db_path)
        self.event_log = event_log or EventLog()
        self.db_lock = threading.Lock()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self):
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(DB_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def _get_db_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def record(self, root_id: str, path: str, status: str, job_id: Optional[str] = None):
        """
        Upsert the outcome of one file.

        Args:
            root_id: Root the file belongs to
            path: Relative path under the root
            status: done or failed
            job_id: Engine job id, if one was assigned
        """
        try:
            with self.db_lock:
                conn = self._get_db_connection()
                try:
                    conn.execute(
                        "INSERT INTO files (root_id, path, status, job_id, attempt_count, updated_at) "
                        "VALUES (?, ?, ?, ?, 1, ?) "
                        "ON CONFLICT(root_id, path) DO UPDATE SET status = excluded.status, "
                        "job_id = excluded.job_id, attempt_count = files.attempt_count + 1, "
                        "updated_at = excluded.updated_at",
                        (root_id, path, status, job_id, datetime.now().isoformat(timespec="seconds")),
                    )
                    conn.commit()
                finally:
                    conn.close()
        except sqlite3.Error as e:
            self.event_log.log(f"Database update error: {e}", "error")

    def load_completed(self, root_id: str) -> List[str]:
        conn = self._get_db_connection()
        try:
            rows = conn.execute(
                "SELECT path FROM files WHERE root_id = ? AND status = 'done'", (root_id,)
            ).fetchall()
        finally:
            conn.close()
        return [row[0] for row in rows]

    def roots(self) -> List[str]:
        conn = self._get_db_connection()
        try:
            rows = conn.execute("SELECT DISTINCT root_id FROM files ORDER BY root_id").fetchall()
        finally:
            conn.close()
        return [row[0] for row in rows]

    def summary(self) -> Dict[str, Dict[str, int]]:
        """
        Count files per root and status.

        Returns:
            {root_id: {status: count}}
        """
        conn = self._get_db_connection()
        try:
            rows = conn.execute(
                "SELECT root_id, status, COUNT(*) FROM files GROUP BY root_id, status"
            ).fetchall()
        finally:
            conn.close()
        summary: Dict[str, Dict[str, int]] = {}
        for root_id, status, count in rows:
            summary.setdefault(root_id, {})[status] = count
        return summary


# =========================================================
# WALK COORDINATOR
# =========================================================
@dataclass
class RootContext:
    """Mutable per-root state owned by the coordinator."""
    root_id: str
    tracker: CompletionTracker = field(default_factory=CompletionTracker)
    failed: CompletionTracker = field(default_factory=CompletionTracker)
    signal: RewalkSignal = field(default_factory=RewalkSignal)
    state: str = ROOT_WALKING
    walks: int = 0
    rewalks: int = 0
    error: Optional[BaseException] = None


@dataclass
class RootReport:
    root_id: str
    state: str
    walks: int
    rewalks: int
    completed: int
    failed_paths: List[str]
    error: Optional[BaseException] = None


@dataclass
class RunReport:
    roots: List[RootReport] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return (not self.cancelled and self.failed_paths == 0
                and all(root.state == ROOT_FINISHED for root in self.roots))

    @property
    def failed_paths(self) -> int:
        return sum(len(root.failed_paths) for root in self.roots)


class WalkCoordinator:
    """
    Drives the walker per root and feeds the dispatcher.

    Per root the state moves ``walking -> aborted -> walking`` on a
    re-walk, ``walking -> transient_error -> walking`` after a backoff,
    and ends in ``finished``, ``failed`` or ``cancelled``.
    """

    def __init__(self, config: DispatchConfig,
                 walk: Callable[[str, Callable[[str, RemoteFile], bool]], None],
                 dispatcher: Dispatcher,
                 retry_policy: Optional[RetryPolicy] = None,
                 event_log: Optional[EventLog] = None,
                 journal: Optional[CompletionJournal] = None):
        """
        Args:
            config: Validated run configuration
            walk: ``walk(root_id, callback)``; raises WalkAborted when the
                callback returns False, anything else is transient
            dispatcher: Started dispatcher sharing this run's stop event
            retry_policy: Backoff for transient walk failures
            event_log: Shared log sink
            journal: Optional completion journal
        """
        self.config = config
        self.walk = walk
        self.dispatcher = dispatcher
        self.retry_policy = retry_policy or config.walk_retry_policy()
        self.event_log = event_log or dispatcher.event_log
        self.journal = journal
        self.stop_event = dispatcher.stop_event
        self.contexts: List[RootContext] = []
        self.scanner_active = False

    def new_context(self, root_id: str, resume: bool = False) -> RootContext:
        ctx = RootContext(root_id=root_id)
        if resume and self.journal is not None:
            completed = self.journal.load_completed(root_id)
            ctx.tracker.seed(completed)
            self.event_log.log(f"Resuming {root_id}: {len(completed)} files already done", "info")
        return ctx

    def run(self, roots: List[str], resume: bool = False) -> RunReport:
        """
        Walk every root in order, then drain the dispatcher and re-walk
        roots whose tasks failed after their walk had finished.

        Args:
            roots: Root identifiers
            resume: Seed each tracker from the journal

        Returns:
            RunReport with one entry per processed root
        """
        self.scanner_active = True
        try:
            for root_id in roots:
                if self.stop_event.is_set():
                    break
                ctx = self.new_context(root_id, resume)
                self.contexts.append(ctx)
                self.process_root(ctx)
                if ctx.state == ROOT_FAILED:
                    break

            self._drain()
        finally:
            self.scanner_active = False

        report = RunReport(cancelled=self.stop_event.is_set())
        for ctx in self.contexts:
            report.roots.append(RootReport(
                root_id=ctx.root_id,
                state=ctx.state,
                walks=ctx.walks,
                rewalks=ctx.rewalks,
                completed=len(ctx.tracker),
                failed_paths=ctx.failed.snapshot(),
                error=ctx.error,
            ))
        self.event_log.log("🏁 Scanner complete", "success")
        return report

    def process_root(self, ctx: RootContext) -> RootContext:
        """Run the walk state machine for one root until it reaches a terminal state."""
        backoff = self.retry_policy.delays()
        while True:
            self._transition(ctx, ROOT_WALKING)
            ctx.walks += 1
            try:
                self.walk(ctx.root_id, lambda prefix, file: self._on_file(ctx, prefix, file))
            except WalkAborted:
                if self.stop_event.is_set():
                    self._transition(ctx, ROOT_CANCELLED)
                    return ctx
                self._transition(ctx, ROOT_ABORTED)
                ctx.signal.consume()
                ctx.rewalks += 1
                self.event_log.log(f"Some error happened, re-walking {ctx.root_id}...", "warning")
                continue
            except Exception as e:
                if self.stop_event.is_set():
                    self._transition(ctx, ROOT_CANCELLED)
                    return ctx
                self._transition(ctx, ROOT_TRANSIENT_ERROR)
                delay = next(backoff, None)
                if delay is None:
                    ctx.error = RootFailed(f"failed to walk {ctx.root_id} after max retry: {e}")
                    self._transition(ctx, ROOT_FAILED)
                    self.event_log.log(str(ctx.error), "error")
                    return ctx
                self.event_log.log(f"Failed to walk {ctx.root_id}, err: {e}, will retry after {delay:.1f}s", "warning")
                if self.stop_event.wait(delay):
                    self._transition(ctx, ROOT_CANCELLED)
                    return ctx
                continue

            self._transition(ctx, ROOT_FINISHED)
            return ctx

    def _drain(self):
        passes = 0
        while self.dispatcher.join():
            pending = [ctx for ctx in self.contexts if ctx.state == ROOT_FINISHED and ctx.signal.pending]
            if not pending:
                return
            if passes >= self.config.max_drain_passes:
                for ctx in pending:
                    self.event_log.log(
                        f"Giving up on {len(ctx.failed)} failed files in {ctx.root_id} after {passes} drain passes",
                        "warning")
                return
            passes += 1
            for ctx in pending:
                if self.stop_event.is_set():
                    return
                ctx.signal.consume()
                ctx.rewalks += 1
                self.event_log.log(f"Re-walking {ctx.root_id} (drain pass {passes})", "warning")
                self.process_root(ctx)

    def _transition(self, ctx: RootContext, state: str):
        if ctx.state != state:
            self.event_log.log(f"Root {ctx.root_id}: {ctx.state} -> {state}", "info")
        ctx.state = state

    def _on_file(self, ctx: RootContext, path_prefix: str, file: RemoteFile) -> bool:
        path = posixpath.join(path_prefix, file.name)
        if path in ctx.tracker:
            return True

        task = Task(file, path_prefix, lambda finished: self._on_task_done(ctx, finished))
        return self.dispatcher.enqueue(task, abort=lambda: ctx.signal.pending)

    def _on_task_done(self, ctx: RootContext, task: Task):
        path = task.relative_path
        if task.error is None:
            ctx.tracker.add(path)
            ctx.failed.discard(path)
            if self.journal is not None:
                self.journal.record(ctx.root_id, path, "done", task.job_id)
            return

        if path in ctx.tracker:
            self.event_log.log(f"Ignoring late failure of {path}, already completed", "info")
            return

        ctx.failed.add(path)
        if self.journal is not None:
            self.journal.record(ctx.root_id, path, "failed", task.job_id)
        if ctx.signal.raise_signal():
            self.event_log.log(f"Task failed ({path}: {task.error}), re-walk scheduled for {ctx.root_id}", "warning")


# =========================================================
# FACADE
# =========================================================
class Ct2AriaCore:
    """
    Wires a whole run together and runs the walk on a scanner thread.

    The CLI drives it like a background engine: ``start``, poll
    ``get_stats``/``get_logs``, then ``wait`` for the report.
    """

    def __init__(self, config: DispatchConfig,
                 walk: Callable[[str, Callable[[str, RemoteFile], bool]], None],
                 resolve_uris: Callable[[RemoteFile], Dict[str, str]],
                 engine: Any,
                 event_log: Optional[EventLog] = None,
                 journal: Optional[CompletionJournal] = None):
        self.config = config.validate()
        self.event_log = event_log or EventLog()
        self.stop_event = threading.Event()
        self.dispatcher = Dispatcher(
            config,
            resolve_uris,
            engine,
            rate_limiter=RateLimiter(config.rate_limit),
            retry_policy=config.resolve_retry_policy(),
            event_log=self.event_log,
            stop_event=self.stop_event,
        )
        self.coordinator = WalkCoordinator(
            config,
            walk,
            self.dispatcher,
            retry_policy=config.walk_retry_policy(),
            event_log=self.event_log,
            journal=journal,
        )
        self.scanner_thread = None
        self.report: Optional[RunReport] = None
        self.scanner_error: Optional[BaseException] = None

        self.event_log.log("Core Engine Initialized", "info")
        self.event_log.log(f"Concurrency: {config.concurrency} | Workers: {config.worker_count} | "
                           f"Rate limit: {config.rate_limit}/s", "info")

    def start(self, roots: List[str], resume: bool = False):
        """
        Start workers and the scanner thread.

        Args:
            roots: Root identifiers, walked in order
            resume: Skip files the journal already records as done
        """
        if not roots:
            raise ConfigError("no input")
        self.dispatcher.start()
        self.scanner_thread = threading.Thread(target=self._scanner_loop, args=(roots, resume),
                                               name="ct2aria-scanner", daemon=True)
        self.scanner_thread.start()
        self.event_log.log(f"🚀 Engine started: {len(roots)} roots", "success")

    def _scanner_loop(self, roots: List[str], resume: bool):
        try:
            self.report = self.coordinator.run(roots, resume)
        except Exception as e:
            self.scanner_error = e
            self.event_log.log(f"✗ Scanner error: {e}", "error")
            self.stop_event.set()

    @property
    def scanner_active(self) -> bool:
        return self.scanner_thread is not None and self.scanner_thread.is_alive()

    def stop(self):
        self.stop_event.set()
        self.event_log.log("Engine stopping", "info")

    def wait(self, timeout: Optional[float] = None) -> Optional[RunReport]:
        """
        Wait for the scanner, then shut the workers down.

        Returns:
            The run report, or None if the scanner is still running

        Raises:
            SubmissionError: if a worker failed to submit a job
        """
        if self.scanner_thread is not None:
            self.scanner_thread.join(timeout)
            if self.scanner_thread.is_alive():
                return None
        self.dispatcher.shutdown()
        if self.scanner_error is not None:
            raise self.scanner_error
        return self.report

    def get_stats(self) -> Dict[str, Any]:
        stats = self.dispatcher.get_stats()
        contexts = list(self.coordinator.contexts)
        stats.update({
            "scanner_active": self.scanner_active,
            "roots_seen": len(contexts),
            "rewalks": sum(ctx.rewalks for ctx in contexts),
            "files_done": sum(len(ctx.tracker) for ctx in contexts),
            "heartbeat": time.time(),
        })
        return stats

    def get_logs(self, from_index: int = 0) -> Tuple[List[str], int]:
        return self.event_log.get_logs(from_index)
