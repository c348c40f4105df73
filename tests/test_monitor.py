"""Tests for the polling controller's gating, failure tracking and resets."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from hivesqueue.config_schema import GlobalSettings
from hivesqueue.models import ConnectionSettings, PollingSnapshot, SlurmJob
from hivesqueue.monitor import SlurmMonitor, make_slurm_backend
from hivesqueue.ssh.client import CommandFailedError


# -- Helpers ------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


CONNECTION = ConnectionSettings(
    host="hive.example.edu",
    username="alice",
    identity_file_path="~/.ssh/id_ed25519",
)


def _settings(**overrides) -> GlobalSettings:
    values = {"refresh_cooldown": 30, "force_refresh_floor": 5, "max_consecutive_failures": 3}
    values.update(overrides)
    return GlobalSettings(**values)


def _backend(jobs: list[SlurmJob] | None = None, error: Exception | None = None) -> MagicMock:
    backend = MagicMock()
    if error is not None:
        backend.get_jobs = AsyncMock(side_effect=error)
    else:
        backend.get_jobs = AsyncMock(return_value=jobs or [])
    return backend


def _make_monitor(
    backend: MagicMock,
    connection: ConnectionSettings = CONNECTION,
    clock: FakeClock | None = None,
    **settings,
) -> SlurmMonitor:
    return SlurmMonitor(
        connection,
        settings=_settings(**settings),
        backend_factory=lambda conn: backend,
        clock=clock or FakeClock(),
    )


def _blocking_backend(jobs: list[SlurmJob]) -> tuple[MagicMock, asyncio.Event]:
    gate = asyncio.Event()

    async def slow_get_jobs() -> list[SlurmJob]:
        await gate.wait()
        return jobs

    backend = MagicMock()
    backend.get_jobs = AsyncMock(side_effect=slow_get_jobs)
    return backend, gate


async def _fetch_and_wait(monitor: SlurmMonitor, force: bool = False) -> bool:
    task = monitor.fetch(force=force)
    if task is None:
        return False
    await task
    return True


# -- Fetch results ------------------------------------------------------------


class TestFetchResults:
    """Tests for folding fetch results into PollingState."""

    @pytest.mark.asyncio
    async def test_success_publishes_sorted_jobs(self):
        jobs = [
            SlurmJob(job_id=5, primary_state="PENDING"),
            SlurmJob(job_id=1, primary_state="RUNNING"),
            SlurmJob(job_id=2, primary_state="PENDING"),
        ]
        monitor = _make_monitor(_backend(jobs))

        assert await _fetch_and_wait(monitor)

        assert [j.job_id for j in monitor.jobs] == [1, 2, 5]
        assert monitor.state.last_error is None
        assert not monitor.state.is_fetching
        assert monitor.state.last_fetch_time is not None
        assert monitor.menu_title == "Slurm: 1R 2Q"

    @pytest.mark.asyncio
    async def test_failure_reports_attempt(self):
        monitor = _make_monitor(_backend(error=CommandFailedError("Permission denied")))

        await _fetch_and_wait(monitor)

        assert monitor.state.last_error == "ssh failed: Permission denied (attempt 1/3)"
        assert monitor.state.consecutive_failures == 1
        assert not monitor.state.is_throttled
        assert not monitor.state.is_fetching
        assert monitor.state.last_fetch_time is not None
        assert monitor.menu_title == "Slurm: !"

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_jobs(self):
        backend = _backend([SlurmJob(job_id=1, primary_state="RUNNING")])
        clock = FakeClock()
        monitor = _make_monitor(backend, clock=clock)
        await _fetch_and_wait(monitor)

        backend.get_jobs = AsyncMock(side_effect=RuntimeError("boom"))
        clock.advance(60)
        await _fetch_and_wait(monitor)

        assert [j.job_id for j in monitor.jobs] == [1]
        assert monitor.state.last_error == "boom (attempt 1/3)"

    @pytest.mark.asyncio
    async def test_success_resets_failures(self):
        backend = _backend(error=RuntimeError("boom"))
        clock = FakeClock()
        monitor = _make_monitor(backend, clock=clock)
        await _fetch_and_wait(monitor)
        assert monitor.state.consecutive_failures == 1

        backend.get_jobs = AsyncMock(return_value=[])
        clock.advance(60)
        await _fetch_and_wait(monitor)

        assert monitor.state.consecutive_failures == 0
        assert monitor.state.last_error is None

    @pytest.mark.asyncio
    async def test_unconfigured_connection_is_not_fetched(self):
        backend = _backend()
        monitor = _make_monitor(backend, connection=ConnectionSettings.empty())

        assert monitor.fetch() is None
        assert "not configured" in monitor.state.last_error
        backend.get_jobs.assert_not_called()


# -- Gating -------------------------------------------------------------------


class TestGating:
    """Tests for single-flight, cooldown and the force floor."""

    @pytest.mark.asyncio
    async def test_single_flight(self):
        backend, gate = _blocking_backend([SlurmJob(job_id=1)])
        monitor = _make_monitor(backend)

        first = monitor.fetch()
        second = monitor.fetch(force=True)
        assert first is not None
        assert second is None
        assert monitor.state.is_fetching

        gate.set()
        await first

        assert backend.get_jobs.await_count == 1
        assert not monitor.state.is_fetching

    @pytest.mark.asyncio
    async def test_cooldown_blocks_regular_fetch(self):
        backend = _backend()
        clock = FakeClock()
        monitor = _make_monitor(backend, clock=clock)
        await _fetch_and_wait(monitor)

        clock.advance(29)
        assert monitor.fetch() is None
        assert backend.get_jobs.await_count == 1

        clock.advance(2)
        assert await _fetch_and_wait(monitor)
        assert backend.get_jobs.await_count == 2

    @pytest.mark.asyncio
    async def test_cooldown_is_silent(self):
        backend = _backend()
        clock = FakeClock()
        monitor = _make_monitor(backend, clock=clock)
        await _fetch_and_wait(monitor)

        monitor.fetch()
        assert monitor.state.last_error is None

    @pytest.mark.asyncio
    async def test_force_bypasses_cooldown_but_not_floor(self):
        backend = _backend()
        clock = FakeClock()
        monitor = _make_monitor(backend, clock=clock)
        await _fetch_and_wait(monitor)

        clock.advance(2)
        assert monitor.fetch(force=True) is None

        clock.advance(4)
        assert await _fetch_and_wait(monitor, force=True)
        assert backend.get_jobs.await_count == 2

    @pytest.mark.asyncio
    async def test_first_fetch_is_not_gated(self):
        monitor = _make_monitor(_backend())
        assert monitor.time_until_next_allowed_refresh() is None
        assert await _fetch_and_wait(monitor)

    @pytest.mark.asyncio
    async def test_time_until_next_allowed_refresh(self):
        clock = FakeClock()
        monitor = _make_monitor(_backend(), clock=clock)
        await _fetch_and_wait(monitor)

        clock.advance(10)
        assert monitor.time_until_next_allowed_refresh() == pytest.approx(20)
        assert monitor.time_until_next_allowed_refresh(now=clock.now + 25) is None


# -- Circuit breaker ----------------------------------------------------------


class TestCircuitBreaker:
    """Tests for throttling after consecutive failures."""

    async def _fail_until_throttled(self, monitor: SlurmMonitor, clock: FakeClock) -> None:
        for _ in range(3):
            assert await _fetch_and_wait(monitor, force=True)
            clock.advance(10)

    @pytest.mark.asyncio
    async def test_throttles_after_max_failures(self):
        backend = _backend(error=CommandFailedError("Permission denied"))
        clock = FakeClock()
        monitor = _make_monitor(backend, clock=clock)

        await _fetch_and_wait(monitor, force=True)
        assert monitor.state.last_error.endswith("(attempt 1/3)")
        clock.advance(10)
        await _fetch_and_wait(monitor, force=True)
        assert monitor.state.last_error.endswith("(attempt 2/3)")
        clock.advance(10)
        await _fetch_and_wait(monitor, force=True)

        assert monitor.state.is_throttled
        assert monitor.state.consecutive_failures == 3
        assert "failed 3 times" in monitor.state.last_error
        assert "polling paused" in monitor.state.last_error

    @pytest.mark.asyncio
    async def test_throttled_fetch_short_circuits(self):
        backend = _backend(error=CommandFailedError("Permission denied"))
        clock = FakeClock()
        monitor = _make_monitor(backend, clock=clock)
        await self._fail_until_throttled(monitor, clock)

        clock.advance(600)
        assert monitor.fetch(force=True) is None
        assert monitor.fetch() is None

        assert backend.get_jobs.await_count == 3
        assert "Check your credentials" in monitor.state.last_error

    @pytest.mark.asyncio
    async def test_update_connection_clears_throttle(self):
        backend = _backend(error=CommandFailedError("Permission denied"))
        clock = FakeClock()
        monitor = _make_monitor(backend, clock=clock)
        await self._fail_until_throttled(monitor, clock)

        monitor.update_connection(
            ConnectionSettings("hive.example.edu", "alice", "~/.ssh/id_ed25519", password="right")
        )

        assert not monitor.state.is_throttled
        assert monitor.state.consecutive_failures == 0
        assert monitor.state.last_error is None
        assert monitor.state.last_fetch_time is None
        assert monitor.time_until_next_allowed_refresh() is None

    @pytest.mark.asyncio
    async def test_custom_threshold(self):
        clock = FakeClock()
        monitor = _make_monitor(
            _backend(error=RuntimeError("boom")), clock=clock, max_consecutive_failures=1
        )
        await _fetch_and_wait(monitor)
        assert monitor.state.is_throttled


# -- Connection changes -------------------------------------------------------


class TestUpdateConnection:
    """Tests for update_connection."""

    @pytest.mark.asyncio
    async def test_resets_state(self):
        monitor = _make_monitor(_backend([SlurmJob(job_id=1, primary_state="RUNNING")]))
        await _fetch_and_wait(monitor)

        other = ConnectionSettings("other.example.edu", "bob", "~/.ssh/id_rsa")
        monitor.update_connection(other)

        assert monitor.connection == other
        assert monitor.host == "other.example.edu"
        assert monitor.jobs == []
        assert monitor.state.last_fetch_time is None
        assert not monitor.state.is_fetching

    @pytest.mark.asyncio
    async def test_same_settings_is_noop(self):
        monitor = _make_monitor(_backend([SlurmJob(job_id=1)]))
        await _fetch_and_wait(monitor)

        monitor.update_connection(ConnectionSettings(**vars(CONNECTION)))

        assert [j.job_id for j in monitor.jobs] == [1]

    @pytest.mark.asyncio
    async def test_fetches_when_newly_configured(self):
        backend = _backend([SlurmJob(job_id=7)])
        monitor = _make_monitor(backend, connection=ConnectionSettings("hive.example.edu", "alice"))

        monitor.update_connection(CONNECTION)
        assert monitor.state.is_fetching
        await monitor.wait_idle()

        assert backend.get_jobs.await_count == 1
        assert [j.job_id for j in monitor.jobs] == [7]

    @pytest.mark.asyncio
    async def test_no_auto_fetch_when_already_configured(self):
        backend = _backend()
        monitor = _make_monitor(backend)

        monitor.update_connection(ConnectionSettings("hive.example.edu", "bob", "~/.ssh/id_rsa"))

        assert not monitor.state.is_fetching
        backend.get_jobs.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_result_is_discarded(self):
        backend, gate = _blocking_backend([SlurmJob(job_id=1, primary_state="RUNNING")])
        monitor = _make_monitor(backend)

        stale = monitor.fetch()
        assert stale is not None
        monitor.update_connection(ConnectionSettings("other.example.edu", "bob", "~/.ssh/id_rsa"))

        gate.set()
        await stale

        assert monitor.jobs == []
        assert monitor.state.last_error is None
        assert monitor.state.last_fetch_time is None
        assert not monitor.state.is_fetching

    @pytest.mark.asyncio
    async def test_stale_failure_does_not_count(self):
        gate = asyncio.Event()

        async def failing() -> list[SlurmJob]:
            await gate.wait()
            raise CommandFailedError("Connection refused")

        backend = MagicMock()
        backend.get_jobs = AsyncMock(side_effect=failing)
        monitor = _make_monitor(backend)

        stale = monitor.fetch()
        monitor.update_connection(ConnectionSettings("other.example.edu", "bob", "~/.ssh/id_rsa"))
        gate.set()
        await stale

        assert monitor.state.consecutive_failures == 0
        assert monitor.state.last_error is None


class TestClose:
    """Tests for shutdown."""

    @pytest.mark.asyncio
    async def test_cancels_current_fetch(self):
        backend, _gate = _blocking_backend([])
        monitor = _make_monitor(backend)
        task = monitor.fetch()
        await asyncio.sleep(0)

        monitor.close()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_cancels_stale_fetch(self):
        """A fetch left behind by a connection change is still cancelled."""
        backend, _gate = _blocking_backend([])
        monitor = _make_monitor(backend)
        stale = monitor.fetch()
        await asyncio.sleep(0)
        monitor.update_connection(ConnectionSettings("other.example.edu", "bob", "~/.ssh/id_rsa"))

        monitor.close()

        with pytest.raises(asyncio.CancelledError):
            await stale
        assert stale.cancelled()


# -- Subscriptions and views --------------------------------------------------


class TestSubscriptions:
    """Tests for snapshot publishing."""

    @pytest.mark.asyncio
    async def test_snapshots_on_fetch(self):
        monitor = _make_monitor(_backend([SlurmJob(job_id=3, primary_state="RUNNING")]))
        snapshots: list[PollingSnapshot] = []
        monitor.subscribe(snapshots.append)

        await _fetch_and_wait(monitor)

        assert [s.is_fetching for s in snapshots] == [True, False]
        assert snapshots[-1].jobs[0].job_id == 3
        assert snapshots[-1].error is None
        assert snapshots[-1].last_fetch_time is not None
        assert snapshots[-1].host == "hive.example.edu"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        monitor = _make_monitor(_backend())
        snapshots: list[PollingSnapshot] = []
        unsubscribe = monitor.subscribe(snapshots.append)
        unsubscribe()
        unsubscribe()

        await _fetch_and_wait(monitor)
        assert snapshots == []

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_fetch(self):
        monitor = _make_monitor(_backend([SlurmJob(job_id=1)]))
        received: list[PollingSnapshot] = []

        def broken(snapshot: PollingSnapshot) -> None:
            raise ValueError("subscriber bug")

        monitor.subscribe(broken)
        monitor.subscribe(received.append)

        await _fetch_and_wait(monitor)

        assert len(received) == 2
        assert [j.job_id for j in monitor.jobs] == [1]

    @pytest.mark.asyncio
    async def test_throttled_attempt_notifies(self):
        clock = FakeClock()
        monitor = _make_monitor(
            _backend(error=RuntimeError("boom")), clock=clock, max_consecutive_failures=1
        )
        await _fetch_and_wait(monitor)
        snapshots: list[PollingSnapshot] = []
        monitor.subscribe(snapshots.append)

        monitor.fetch(force=True)

        assert len(snapshots) == 1
        assert snapshots[0].is_throttled


class TestViews:
    """Tests for derived monitor views."""

    @pytest.mark.asyncio
    async def test_visible_jobs_limit(self):
        jobs = [SlurmJob(job_id=i, primary_state="PENDING") for i in range(30)]
        monitor = _make_monitor(_backend(jobs), max_visible_jobs=20)
        await _fetch_and_wait(monitor)

        assert len(monitor.jobs) == 30
        assert len(monitor.visible_jobs) == 20
        assert len(monitor.pending_jobs) == 30
        assert monitor.running_jobs == []


class TestMakeSlurmBackend:
    """The default factory wires settings into the ssh client."""

    def test_wires_settings(self):
        settings = GlobalSettings(
            ssh_path="/opt/ssh",
            connect_timeout=3,
            command_timeout=12,
            module_name="slurm",
            remote_command="squeue --json",
        )
        backend = make_slurm_backend(CONNECTION, settings)

        assert backend.remote_command == "squeue --json"
        assert backend._ssh.ssh_path == "/opt/ssh"
        assert backend._ssh.connect_timeout == 3
        assert backend._ssh.command_timeout == 12
        assert backend._ssh.module_name == "slurm"
        assert backend._ssh.connection is CONNECTION
