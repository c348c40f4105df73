"""Data models for job status polling."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobState(str, Enum):
    """Slurm job states, collapsed to the ones the menu distinguishes."""

    RUNNING = "RUNNING"
    PENDING = "PENDING"
    COMPLETING = "COMPLETING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    CONFIGURING = "CONFIGURING"
    SUSPENDED = "SUSPENDED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_string(cls, state: str) -> "JobState":
        """Parse a state string, handling abbreviated forms."""
        state = state.strip().upper()
        abbrev_map = {
            "R": cls.RUNNING,
            "PD": cls.PENDING,
            "CG": cls.COMPLETING,
            "CD": cls.COMPLETED,
            "F": cls.FAILED,
            "CA": cls.CANCELLED,
            "CF": cls.CONFIGURING,
            "S": cls.SUSPENDED,
            # Failure-family states
            "TO": cls.FAILED,
            "TIMEOUT": cls.FAILED,
            "NF": cls.FAILED,
            "NODE_FAIL": cls.FAILED,
            "OOM": cls.FAILED,
            "OUT_OF_MEMORY": cls.FAILED,
            "BF": cls.FAILED,
            "BOOT_FAIL": cls.FAILED,
            "DL": cls.FAILED,
            "DEADLINE": cls.FAILED,
            "PR": cls.CANCELLED,
            "PREEMPTED": cls.CANCELLED,
        }
        if state in abbrev_map:
            return abbrev_map[state]
        try:
            return cls(state)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class DisplayState:
    """A normalized job state that keeps the scheduler's original text."""

    state: JobState
    raw: str = ""

    @classmethod
    def from_string(cls, raw: str) -> "DisplayState":
        return cls(state=JobState.from_string(raw), raw=raw)

    @property
    def label(self) -> str:
        """Human-readable label, falling back to the raw text for unknown states."""
        if self.state is JobState.UNKNOWN:
            return self.raw.strip().replace("_", " ").title() or "Unknown"
        return self.state.value.title()

    @property
    def priority(self) -> int:
        """Sort priority: running first, then pending, then everything else."""
        if self.state is JobState.RUNNING:
            return 0
        if self.state is JobState.PENDING:
            return 1
        return 2


def format_duration(seconds: int) -> str:
    """Format a duration in seconds for compact display."""
    seconds = max(seconds, 0)
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours:02d}h"
    if hours > 0:
        return f"{hours}h {minutes:02d}m"
    if minutes > 0:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


NO_VALUE = "—"
INFINITE_VALUE = "∞"


@dataclass
class SlurmJob:
    """Represents a Slurm job decoded from ``squeue --json`` output."""

    job_id: int
    name: str = ""
    partition: str = ""
    primary_state: str = ""
    state_flags: list[str] = field(default_factory=list)
    elapsed_seconds: int | None = None
    limit_seconds: int | None = None  # None if unlimited or unknown
    limit_infinite: bool = False
    time_remaining_seconds: int | None = None
    requested_resources: dict[str, str] = field(default_factory=dict)  # keys lower-cased
    allocated_resources: dict[str, str] = field(default_factory=dict)  # keys lower-cased
    elapsed_text: str = ""  # Raw elapsed value, kept for display fallback
    limit_text: str = ""  # Raw limit value, kept for display fallback
    allocated_cpus: int | None = None  # From job_resources
    node_count: int | None = None

    @property
    def display_state(self) -> DisplayState:
        return DisplayState.from_string(self.primary_state)

    @property
    def display_name(self) -> str:
        return self.name or f"job {self.job_id}"

    @property
    def formatted_elapsed_time(self) -> str:
        if self.elapsed_seconds is not None:
            return format_duration(self.elapsed_seconds)
        return self.elapsed_text or NO_VALUE

    @property
    def formatted_time_limit(self) -> str:
        if self.limit_infinite:
            return INFINITE_VALUE
        if self.limit_seconds is not None:
            return format_duration(self.limit_seconds)
        return self.limit_text or NO_VALUE

    @property
    def formatted_time_remaining(self) -> str:
        if self.limit_infinite:
            return INFINITE_VALUE
        if self.time_remaining_seconds is None:
            return NO_VALUE
        return format_duration(self.time_remaining_seconds)

    def _resource(self, key: str) -> str | None:
        key = key.lower()
        return self.requested_resources.get(key) or self.allocated_resources.get(key)

    @property
    def cpu_summary(self) -> str | None:
        if cpus := self._resource("cpu"):
            return cpus
        if self.allocated_cpus is not None:
            return str(self.allocated_cpus)
        return None

    @property
    def memory_summary(self) -> str | None:
        return self._resource("mem")

    @property
    def gpu_summary(self) -> str | None:
        for key in ("gres/gpu", "gpu"):
            if value := self._resource(key):
                return value
        # Typed GRES such as gres/gpu:a100=2
        for resources in (self.requested_resources, self.allocated_resources):
            for key, value in resources.items():
                if "gpu" in key and value:
                    return value
        return None

    @property
    def resource_summary(self) -> str:
        """Compact ``4 CPU · 16G · 2 GPU`` line, omitting unknown parts."""
        parts = []
        if cpus := self.cpu_summary:
            parts.append(f"{cpus} CPU")
        if mem := self.memory_summary:
            parts.append(mem)
        if gpus := self.gpu_summary:
            parts.append(f"{gpus} GPU")
        return " · ".join(parts)

    @property
    def state_tag(self) -> str:
        """Lower-case state name for clients to style on (e.g. ``running``)."""
        return self.display_state.state.value.lower()


@dataclass(frozen=True)
class ConnectionSettings:
    """Credentials and destination for one cluster login node.

    Instances are immutable; any credential change produces a new value.
    """

    host: str
    username: str
    identity_file_path: str | None = None
    password: str | None = None

    @classmethod
    def empty(cls) -> "ConnectionSettings":
        return cls(host="", username="")

    @property
    def is_configured(self) -> bool:
        # Password is optional; the SSH key is not
        return bool(self.host) and bool(self.username) and self.identity_file_path is not None

    @property
    def destination(self) -> str:
        """``user@host``, or the bare host when no username is set."""
        if not self.username:
            return self.host
        return f"{self.username}@{self.host}"

    def __repr__(self) -> str:
        return (
            f"ConnectionSettings(host={self.host!r}, username={self.username!r}, "
            f"identity_file_path={self.identity_file_path!r}, "
            f"has_password={self.password is not None})"
        )


@dataclass
class PollingState:
    """Mutable polling state for the active connection."""

    jobs: list[SlurmJob] = field(default_factory=list)
    last_error: str | None = None
    is_fetching: bool = False
    last_fetch_time: datetime | None = None
    consecutive_failures: int = 0
    is_throttled: bool = False


@dataclass(frozen=True)
class PollingSnapshot:
    """Immutable view of PollingState published to subscribers."""

    host: str
    jobs: tuple[SlurmJob, ...]
    error: str | None
    is_fetching: bool
    last_fetch_time: datetime | None
    consecutive_failures: int = 0
    is_throttled: bool = False
