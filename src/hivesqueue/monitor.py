"""Polling controller for the active cluster connection.

The monitor owns PollingState and is the only code that mutates it. All
methods must be called from the event loop thread; the remote call itself
runs as a separate asyncio task whose result is folded back in by the
monitor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable

from hivesqueue.backends.base import JobBackend
from hivesqueue.backends.slurm import SlurmBackend, sort_jobs
from hivesqueue.config_schema import GlobalSettings
from hivesqueue.models import (
    ConnectionSettings,
    JobState,
    PollingSnapshot,
    PollingState,
    SlurmJob,
)
from hivesqueue.ssh.client import SSHClient

logger = logging.getLogger(__name__)

BackendFactory = Callable[[ConnectionSettings], JobBackend]
Subscriber = Callable[[PollingSnapshot], None]


def make_slurm_backend(connection: ConnectionSettings, settings: GlobalSettings) -> SlurmBackend:
    """Create the ssh-backed Slurm backend for *connection*."""
    client = SSHClient(
        connection,
        ssh_path=settings.ssh_path,
        connect_timeout=settings.connect_timeout,
        command_timeout=settings.command_timeout,
        module_init_script=settings.module_init_script,
        module_name=settings.module_name,
        module_command_path=settings.module_command_path,
    )
    return SlurmBackend(client, remote_command=settings.remote_command)


class SlurmMonitor:
    """Gates and runs job fetches for one connection at a time.

    A fetch is skipped when one is already in flight, when polling is
    throttled after repeated failures, or when the last fetch finished too
    recently. Forced fetches skip the regular cooldown but not the shorter
    force_refresh_floor.
    """

    def __init__(
        self,
        connection: ConnectionSettings,
        settings: GlobalSettings | None = None,
        backend_factory: BackendFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the monitor.

        Args:
            connection: Initial connection settings.
            settings: Application settings (cooldowns, failure threshold, ssh options).
            backend_factory: Builds the backend for a connection; defaults to
                the ssh-backed Slurm backend.
            clock: Monotonic clock used for cooldowns.
        """
        self.settings = settings or GlobalSettings()
        self._connection = connection
        self._backend_factory = backend_factory or (
            lambda conn: make_slurm_backend(conn, self.settings)
        )
        self._clock = clock
        self.state = PollingState()
        self._subscribers: list[Subscriber] = []
        # Bumped on every connection change; results tagged with an older
        # generation are discarded
        self._generation = 0
        self._fetch_task: asyncio.Task[None] | None = None
        # Every fetch still running, including stale ones, so close() can cancel them
        self._tasks: set[asyncio.Task[None]] = set()
        self._last_fetch_at: float | None = None

    # -- Read-only views ---------------------------------------------------

    @property
    def connection(self) -> ConnectionSettings:
        return self._connection

    @property
    def host(self) -> str:
        return self._connection.host

    @property
    def jobs(self) -> list[SlurmJob]:
        return self.state.jobs

    @property
    def running_jobs(self) -> list[SlurmJob]:
        return [job for job in self.state.jobs if job.display_state.state is JobState.RUNNING]

    @property
    def pending_jobs(self) -> list[SlurmJob]:
        return [job for job in self.state.jobs if job.display_state.state is JobState.PENDING]

    @property
    def visible_jobs(self) -> list[SlurmJob]:
        return self.state.jobs[: self.settings.max_visible_jobs]

    @property
    def menu_title(self) -> str:
        if self.state.last_error is not None:
            return "Slurm: !"
        return f"Slurm: {len(self.running_jobs)}R {len(self.pending_jobs)}Q"

    def time_until_next_allowed_refresh(self, now: float | None = None) -> float | None:
        """Seconds until a non-forced refresh is allowed, or None if allowed now."""
        if self._last_fetch_at is None:
            return None
        now = self._clock() if now is None else now
        remaining = self.settings.refresh_cooldown - (now - self._last_fetch_at)
        return remaining if remaining > 0 else None

    def snapshot(self) -> PollingSnapshot:
        return PollingSnapshot(
            host=self.host,
            jobs=tuple(self.state.jobs),
            error=self.state.last_error,
            is_fetching=self.state.is_fetching,
            last_fetch_time=self.state.last_fetch_time,
            consecutive_failures=self.state.consecutive_failures,
            is_throttled=self.state.is_throttled,
        )

    # -- Subscriptions -----------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for state snapshots. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Polling state subscriber failed")

    # -- Fetching ----------------------------------------------------------

    def fetch(self, force: bool = False) -> asyncio.Task[None] | None:
        """Start a fetch unless it is gated.

        Args:
            force: Skip the regular cooldown (the force_refresh_floor still applies).

        Returns:
            The task running the fetch, or None if no fetch was started.
        """
        loop = asyncio.get_running_loop()

        if self.state.is_fetching:
            logger.debug("Fetch already in flight; ignoring request")
            return None

        if self.state.is_throttled:
            self.state.last_error = (
                f"Polling paused after {self.state.consecutive_failures} failed attempts. "
                "Check your credentials and settings."
            )
            self._notify()
            return None

        if not self._connection.is_configured:
            self.state.last_error = "Connection is not configured: set host, username and SSH key."
            self._notify()
            return None

        if self._last_fetch_at is not None:
            since_last = self._clock() - self._last_fetch_at
            if since_last < self.settings.force_refresh_floor:
                logger.debug(f"Refresh requested {since_last:.1f}s after the last one; ignoring")
                return None
            if not force and since_last < self.settings.refresh_cooldown:
                return None

        self.state.is_fetching = True
        self._notify()

        backend = self._backend_factory(self._connection)
        task = loop.create_task(self._run_fetch(backend, self._generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._fetch_task = task
        return task

    async def _run_fetch(self, backend: JobBackend, generation: int) -> None:
        start_time = time.perf_counter()
        jobs: list[SlurmJob] = []
        error: Exception | None = None
        try:
            jobs = await backend.get_jobs()
        except Exception as e:
            error = e
        duration_ms = int((time.perf_counter() - start_time) * 1000)

        if generation != self._generation:
            logger.info(f"Discarding fetch result for a previous connection ({duration_ms}ms)")
            return

        if error is None:
            self._record_success(jobs)
            logger.debug(f"Fetched {len(jobs)} jobs from '{self.host}' in {duration_ms}ms")
        else:
            self._record_failure(error)

        self.state.is_fetching = False
        self.state.last_fetch_time = datetime.now()
        self._last_fetch_at = self._clock()
        self._fetch_task = None
        self._notify()

    def _record_success(self, jobs: list[SlurmJob]) -> None:
        self.state.jobs = sort_jobs(jobs)
        self.state.last_error = None
        self.state.consecutive_failures = 0
        self.state.is_throttled = False

    def _record_failure(self, error: Exception) -> None:
        message = str(error) or type(error).__name__
        max_failures = self.settings.max_consecutive_failures
        failures = min(self.state.consecutive_failures + 1, max_failures)
        self.state.consecutive_failures = failures

        if failures >= max_failures:
            self.state.is_throttled = True
            self.state.last_error = (
                f"{message} (failed {failures} times in a row; polling paused, "
                "check your credentials)"
            )
            logger.error(f"Job polling failed for '{self.host}', pausing after {failures} failures: {message}")
        else:
            self.state.last_error = f"{message} (attempt {failures}/{max_failures})"
            logger.error(f"Job polling failed for '{self.host}' (attempt {failures}/{max_failures}): {message}")

    async def wait_idle(self) -> None:
        """Wait for the in-flight fetch, if any, to finish."""
        if self._fetch_task is not None:
            await asyncio.shield(self._fetch_task)

    # -- Connection changes ------------------------------------------------

    def update_connection(self, connection: ConnectionSettings) -> None:
        """Switch to new connection settings and reset all polling state.

        A fetch still in flight for the old connection keeps running, but its
        result is discarded. If the new settings are the first usable ones, a
        regular fetch is started.
        """
        if connection == self._connection:
            return

        was_configured = self._connection.is_configured
        logger.info(f"Connection changed: {connection!r}")

        self._connection = connection
        self._generation += 1
        self._fetch_task = None
        self._last_fetch_at = None
        self.state = PollingState()
        self._notify()

        if connection.is_configured and not was_configured:
            self.fetch()

    def close(self) -> None:
        """Cancel every outstanding fetch, stale ones included (used on shutdown)."""
        self._generation += 1
        for task in list(self._tasks):
            task.cancel()
        self._fetch_task = None
