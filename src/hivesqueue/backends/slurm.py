"""Slurm job backend implementation."""

import json
import logging
from typing import Any

from hivesqueue.backends.base import JobBackend
from hivesqueue.decoding import decode_int, decode_state_list, decode_string, decode_value, is_wrapper
from hivesqueue.models import SlurmJob
from hivesqueue.ssh.client import SSHClient

logger = logging.getLogger(__name__)


class DecodeError(Exception):
    """Raised when squeue output is not a ``{"jobs": [...]}`` document."""


# Textual durations that mean "no value" (elapsed) or "no limit" (limit)
UNKNOWN_DURATIONS = {"", "N/A", "NONE", "UNKNOWN", "INVALID"}
UNLIMITED_DURATIONS = {"UNLIMITED", "INFINITE"}


def parse_slurm_duration(time_str: str) -> int | None:
    """Parse Slurm duration string to total seconds.

    Handles formats: MM:SS, HH:MM:SS, D-HH:MM:SS. Returns None for anything
    else, including UNLIMITED and N/A.
    """
    time_str = time_str.strip()
    if time_str.upper() in UNKNOWN_DURATIONS | UNLIMITED_DURATIONS:
        return None

    days = 0
    try:
        if "-" in time_str:
            day_part, time_str = time_str.split("-", 1)
            days = int(day_part)

        parts = time_str.split(":")
        if len(parts) == 3:
            hours, minutes, seconds = int(parts[0]), int(parts[1]), int(float(parts[2]))
        elif len(parts) == 2:
            hours, minutes, seconds = 0, int(parts[0]), int(float(parts[1]))
        else:
            return None
    except ValueError:
        return None

    if min(days, hours, minutes, seconds) < 0:
        return None
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def parse_tres(tres: str) -> dict[str, str]:
    """Parse a TRES string (``cpu=4,mem=16G,gres/gpu=2``) into a lower-cased mapping."""
    resources: dict[str, str] = {}
    for item in tres.split(","):
        key, sep, value = item.partition("=")
        key = key.strip().lower()
        if not sep or not key:
            continue
        resources[key] = value.strip()
    return resources


def _is_unset_wrapper(node: Any) -> bool:
    # {"set": false, "infinite": false, "number": 0} means "no value" in Slurm
    if not is_wrapper(node) or "set" not in node:
        return False
    value = decode_value(node)
    return not value.is_set and not value.infinite


def _parse_elapsed(node: Any) -> tuple[int | None, str]:
    if _is_unset_wrapper(node):
        return None, ""
    value = decode_value(node)
    if value.number is not None:
        return max(value.number, 0), value.text
    return parse_slurm_duration(value.text), value.text


def _parse_limit(node: Any) -> tuple[int | None, bool, str]:
    """Return (limit_seconds, infinite, raw_text).

    Numeric limits are reported by Slurm in minutes.
    """
    if _is_unset_wrapper(node):
        return None, False, ""
    value = decode_value(node)
    if value.infinite:
        return None, True, value.text
    if value.text.strip().upper() in UNLIMITED_DURATIONS:
        return None, True, value.text
    if value.number is not None and ":" not in value.text:
        if value.number < 0:
            return None, False, value.text
        return value.number * 60, False, value.text
    return parse_slurm_duration(value.text), False, value.text


def compute_time_remaining(elapsed: int | None, limit: int | None, infinite: bool) -> int | None:
    """Time left before the limit, or None if the limit is infinite or unknown."""
    if infinite or limit is None:
        return None
    return max(limit - max(elapsed or 0, 0), 0)


def build_job(record: dict[str, Any]) -> SlurmJob:
    """Build a SlurmJob from one ``squeue --json`` record."""
    time_info = record.get("time")
    if not isinstance(time_info, dict):
        time_info = {}
    resources = record.get("job_resources")
    if not isinstance(resources, dict):
        resources = {}

    elapsed, elapsed_text = _parse_elapsed(time_info.get("elapsed"))
    # Older releases put the limit at the top level as time_limit
    limit_node = time_info.get("limit", record.get("time_limit"))
    limit, infinite, limit_text = _parse_limit(limit_node)

    states = decode_state_list(record.get("job_state"))

    cpus = decode_int(resources.get("cpus", resources.get("allocated_cpus", record.get("cpus"))))
    nodes = resources.get("nodes")
    if isinstance(nodes, dict):
        node_count = decode_int(nodes.get("count"))
    else:
        node_count = decode_int(record.get("node_count"))

    job_id = decode_int(record.get("job_id"))
    if job_id is None:
        logger.debug(f"Job record without a usable job_id: {record.get('job_id')!r}")

    return SlurmJob(
        job_id=job_id if job_id is not None else 0,
        name=decode_string(record.get("name")),
        partition=decode_string(record.get("partition")),
        primary_state=states[0] if states else "",
        state_flags=states[1:],
        elapsed_seconds=elapsed,
        limit_seconds=limit,
        limit_infinite=infinite,
        time_remaining_seconds=compute_time_remaining(elapsed, limit, infinite),
        requested_resources=parse_tres(decode_string(record.get("tres_req_str"))),
        allocated_resources=parse_tres(decode_string(record.get("tres_alloc_str"))),
        elapsed_text=elapsed_text,
        limit_text=limit_text,
        allocated_cpus=cpus,
        node_count=node_count,
    )


def sort_jobs(jobs: list[SlurmJob]) -> list[SlurmJob]:
    """Order jobs for display: running, then pending, then the rest; ties by job ID."""
    return sorted(jobs, key=lambda job: (job.display_state.priority, job.job_id))


def parse_jobs_response(payload: bytes | str) -> list[SlurmJob]:
    """Decode ``squeue --json`` output into sorted SlurmJob objects.

    Raises:
        DecodeError: If the payload is not JSON or has no ``jobs`` array.
    """
    try:
        document = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise DecodeError(f"Invalid squeue JSON: {e}") from e

    if not isinstance(document, dict) or not isinstance(document.get("jobs"), list):
        raise DecodeError("Unexpected squeue output: missing 'jobs' array")

    jobs: list[SlurmJob] = []
    for record in document["jobs"]:
        if not isinstance(record, dict):
            logger.warning(f"Skipping non-object job record: {record!r:.80}")
            continue
        jobs.append(build_job(record))

    return sort_jobs(jobs)


class SlurmBackend(JobBackend):
    """Slurm job backend using SSH to run squeue."""

    def __init__(self, ssh_client: SSHClient, remote_command: str = "squeue --me --json") -> None:
        """Initialize with an SSH client for the cluster login node."""
        self._ssh = ssh_client
        self.remote_command = remote_command

    @property
    def name(self) -> str:
        return "slurm"

    async def get_jobs(self) -> list[SlurmJob]:
        """
        Fetch the current user's jobs from Slurm.

        Returns:
            List of SlurmJob objects, sorted for display.

        Raises:
            SSHError: If the remote command could not be run.
            DecodeError: If the output is not a squeue JSON document.
        """
        stdout = await self._ssh.run_command(self.remote_command)
        jobs = parse_jobs_response(stdout)
        logger.debug(f"Fetched {len(jobs)} jobs from Slurm")
        return jobs

    async def is_available(self) -> bool:
        """Check if Slurm is available by running squeue --version."""
        try:
            stdout = await self._ssh.run_command("squeue --version")
        except Exception as e:
            logger.warning(f"Slurm availability check failed: {e}")
            return False
        return b"slurm" in stdout.lower()
