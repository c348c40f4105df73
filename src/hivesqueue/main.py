"""HiveSqueue - Slurm job status server."""

import argparse
import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncGenerator, Callable

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from hivesqueue.config import load_config
from hivesqueue.config_schema import HiveSqueueConfig, SSHConfig
from hivesqueue.credentials import (
    InMemorySecretStore,
    KeychainError,
    SecretStore,
    load_connection_settings,
    update_stored_password,
)
from hivesqueue.models import ConnectionSettings, PollingSnapshot, SlurmJob
from hivesqueue.monitor import SlurmMonitor

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Application state container."""

    config: HiveSqueueConfig | None = None
    monitor: SlurmMonitor | None = None
    secret_store: SecretStore = field(default_factory=InMemorySecretStore)
    _polling_task: asyncio.Task[None] | None = None
    _unsubscribe: Callable[[], None] | None = None
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    # SSE: rotated on every monitor state change
    _poll_event: asyncio.Event = field(default_factory=asyncio.Event)

    def notify_poll(self, snapshot: PollingSnapshot | None = None) -> None:
        """Wake all SSE listeners."""
        old = self._poll_event
        self._poll_event = asyncio.Event()
        old.set()

    async def wait_for_poll(self, timeout: float = 30.0) -> bool:
        """Wait for the next monitor state change."""
        try:
            await asyncio.wait_for(self._poll_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False


state = AppState()

# CLI argument for config path (set by run())
_config_path: Path | None = None


async def poll_jobs() -> None:
    """Background task issuing a regular (non-forced) fetch every poll_interval."""
    if state.config is None or state.monitor is None:
        return

    interval = state.config.settings.poll_interval
    logger.info(f"Starting job polling (interval: {interval}s)")

    while not state._shutdown_event.is_set():
        state.monitor.fetch()
        try:
            await asyncio.wait_for(state._shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
        except asyncio.CancelledError:
            break


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager - handles startup and shutdown."""
    config = load_config(_config_path)
    state.config = config

    connection = load_connection_settings(config, state.secret_store)
    logger.info(f"Loaded configuration for {connection!r}")
    if not connection.is_configured:
        logger.warning("Connection is incomplete; set ssh.host, ssh.user and ssh.key_path")

    state.monitor = SlurmMonitor(connection, settings=config.settings)
    state._unsubscribe = state.monitor.subscribe(state.notify_poll)
    state._polling_task = asyncio.create_task(poll_jobs())

    yield

    logger.info("Shutting down...")
    state._shutdown_event.set()
    state.notify_poll()

    if state._polling_task:
        state._polling_task.cancel()
        try:
            await state._polling_task
        except asyncio.CancelledError:
            pass

    if state._unsubscribe:
        state._unsubscribe()
    state.monitor.close()


app = FastAPI(
    title="HiveSqueue",
    description="Slurm job status over SSH",
    version="0.1.0",
    lifespan=lifespan,
)


@dataclass
class JobView:
    """Display row for a single job."""

    job_id: int
    name: str
    partition: str
    state: str
    state_flags: list[str]
    state_tag: str
    elapsed: str
    time_limit: str
    time_remaining: str
    resources: str

    @classmethod
    def from_job(cls, job: SlurmJob) -> "JobView":
        return cls(
            job_id=job.job_id,
            name=job.display_name,
            partition=job.partition.upper(),
            state=job.display_state.label,
            state_flags=list(job.state_flags),
            state_tag=job.state_tag,
            elapsed=job.formatted_elapsed_time,
            time_limit=job.formatted_time_limit,
            time_remaining=job.formatted_time_remaining,
            resources=job.resource_summary,
        )


def _require_monitor() -> SlurmMonitor:
    if state.monitor is None:
        raise HTTPException(status_code=503, detail="Monitor not initialized")
    return state.monitor


def _status_payload(monitor: SlurmMonitor) -> dict[str, Any]:
    last_fetch: datetime | None = monitor.state.last_fetch_time
    remaining = monitor.time_until_next_allowed_refresh()
    return {
        "host": monitor.host,
        "title": monitor.menu_title,
        "configured": monitor.connection.is_configured,
        "running": len(monitor.running_jobs),
        "pending": len(monitor.pending_jobs),
        "total": len(monitor.jobs),
        "error": monitor.state.last_error,
        "is_fetching": monitor.state.is_fetching,
        "is_throttled": monitor.state.is_throttled,
        "last_fetch_time": last_fetch.isoformat() if last_fetch else None,
        "next_refresh_in": int(remaining) + 1 if remaining is not None else 0,
    }


def _jobs_payload(monitor: SlurmMonitor) -> list[dict[str, Any]]:
    return [asdict(JobView.from_job(job)) for job in monitor.visible_jobs]


@app.get("/")
async def index() -> dict[str, Any]:
    """Menu-style status summary."""
    return _status_payload(_require_monitor())


@app.get("/jobs")
async def jobs() -> list[dict[str, Any]]:
    """Visible jobs in display order."""
    return _jobs_payload(_require_monitor())


@app.post("/refresh")
async def refresh(force: bool = False) -> dict[str, Any]:
    """Request a fetch; 'force' skips the regular cooldown."""
    monitor = _require_monitor()
    task = monitor.fetch(force=force)
    return {"started": task is not None, "status": _status_payload(monitor)}


class ConnectionUpdate(BaseModel):
    """Body of PUT /connection."""

    host: str = Field(default="", description="Login node; empty uses the default cluster host")
    user: str = Field(default="", description="SSH username")
    key_path: str | None = Field(default=None, description="Path to SSH private key")
    password: str | None = Field(
        default=None,
        description="New password; an empty string removes the stored one, omitted keeps it",
        repr=False,
    )


@app.get("/connection")
async def get_connection() -> dict[str, Any]:
    """Current connection settings (the password is only reported as present)."""
    connection = _require_monitor().connection
    return {
        "host": connection.host,
        "user": connection.username,
        "key_path": connection.identity_file_path,
        "has_password": connection.password is not None,
        "configured": connection.is_configured,
    }


@app.put("/connection")
async def put_connection(update: ConnectionUpdate) -> dict[str, Any]:
    """Replace the connection settings and reset polling.

    The password is kept in the secret store under the host, so switching
    back to a host picks its stored password up again.
    """
    monitor = _require_monitor()
    settings = monitor.settings
    host = update.host or settings.cluster_host

    try:
        password = update_stored_password(
            state.secret_store, settings.keychain_service, host, update.password
        )
    except KeychainError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    key_path = os.path.expanduser(update.key_path) if update.key_path else None
    monitor.update_connection(
        ConnectionSettings(
            host=host,
            username=update.user,
            identity_file_path=key_path,
            password=password,
        )
    )
    if state.config is not None:
        state.config.ssh = SSHConfig(host=update.host, user=update.user, key_path=update.key_path)

    return _status_payload(monitor)


@app.get("/jobs/stream")
async def jobs_stream(request: Request) -> EventSourceResponse:
    """SSE endpoint for live job updates."""

    async def event_generator() -> AsyncGenerator[dict[str, Any], None]:
        while True:
            changed = await state.wait_for_poll()
            if state._shutdown_event.is_set() or await request.is_disconnected():
                break

            monitor = state.monitor
            if changed and monitor is not None:
                payload = {"status": _status_payload(monitor), "jobs": _jobs_payload(monitor)}
                yield {"event": "jobs-update", "data": json.dumps(payload)}
            else:
                yield {"comment": "keepalive"}

    return EventSourceResponse(event_generator())


@app.get("/ping")
async def ping() -> dict[str, str]:
    """Simple ping endpoint for debugging - no dependencies."""
    return {"status": "pong"}


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="HiveSqueue - Slurm job status over SSH",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to configuration file (default: ./hivesqueue.yaml)",
    )
    parser.add_argument(
        "--host",
        type=str,
        help="Host to bind the server to (overrides config)",
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        help="Port to bind the server to (overrides config)",
    )
    return parser.parse_args()


def run() -> None:
    """Run the application with uvicorn."""
    global _config_path

    args = parse_args()
    _config_path = args.config

    config = load_config(_config_path)

    host = args.host or config.settings.server_host
    port = args.port or config.settings.server_port

    uvicorn.run(
        "hivesqueue.main:app",
        host=host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run()
