"""Run commands on the cluster through the system ssh client."""

import asyncio
import logging
import os
import shlex
import signal
import tempfile
from pathlib import Path

from hivesqueue.models import ConnectionSettings

logger = logging.getLogger(__name__)

# Directories prepended to PATH on the login node before running the command
REMOTE_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/local/sbin:/usr/sbin:/sbin:/opt/slurm/bin"

# Grace period for reaping and collecting output once ssh has exited or been killed
DRAIN_GRACE_SECONDS = 1.0

# How often the exit status is checked while a command runs
EXIT_POLL_SECONDS = 0.05

_CHUNK_SIZE = 65536


class SSHError(Exception):
    """Base class for failures running a remote command."""


class TransportUnavailableError(SSHError):
    """The ssh binary is missing or not executable."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"SSH client missing at {path}.")


class LaunchFailedError(SSHError):
    """The ssh process could not be started."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Unable to launch ssh: {reason}")


class CommandFailedError(SSHError):
    """ssh exited with a non-zero status or was killed after the timeout."""

    def __init__(self, message: str, exit_code: int | None = None, timed_out: bool = False) -> None:
        self.message = message
        self.exit_code = exit_code
        self.timed_out = timed_out
        super().__init__(f"ssh failed: {message}")


def build_remote_command(
    command: str,
    module_init_script: str | None = None,
    module_name: str | None = None,
    module_command_path: str | None = None,
) -> str:
    """Wrap *command* in a non-interactive shell preamble.

    Login nodes often only put the Slurm binaries on PATH after an environment
    module has been loaded, which a non-interactive ssh session never does.
    Module loading failures are ignored so that the command still runs on
    systems where Slurm is on the default PATH.
    """
    lines = [
        f'PATH="{REMOTE_PATH}:$PATH"; export PATH',
        "LANG=C; LC_ALL=C; export LANG LC_ALL",
    ]
    if module_init_script:
        init = shlex.quote(module_init_script)
        lines.append(f"if [ -r {init} ]; then . {init} >/dev/null 2>&1; fi")
    if module_name:
        name = shlex.quote(module_name)
        modulecmd = shlex.quote(module_command_path or "modulecmd")
        lines.append(
            f"if command -v module >/dev/null 2>&1; then module load {name} >/dev/null 2>&1; "
            f"elif command -v {modulecmd} >/dev/null 2>&1; then "
            f'eval "$({modulecmd} sh load {name} 2>/dev/null)" >/dev/null 2>&1; fi'
        )
    lines.append(command)
    return f"/bin/sh -c {shlex.quote(chr(10).join(lines))}"


def write_askpass_script(password: str) -> Path:
    """Write an owner-only executable script that prints *password*.

    The caller is responsible for deleting it.
    """
    fd, path = tempfile.mkstemp(prefix="hivesqueue-askpass-")
    try:
        with os.fdopen(fd, "w") as f:
            f.write("#!/bin/sh\n")
            f.write(f"printf '%s\\n' {shlex.quote(password)}\n")
        os.chmod(path, 0o700)
    except BaseException:
        os.unlink(path)
        raise
    return Path(path)


async def _drain(stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
    if stream is None:
        return
    while chunk := await stream.read(_CHUNK_SIZE):
        buffer.extend(chunk)


async def _wait_for_exit(process: asyncio.subprocess.Process, timeout: float) -> bool:
    """Wait up to *timeout* seconds for *process* itself to exit.

    ``Process.wait()`` also waits for the pipes to close, which never happens
    while a child of ssh (e.g. a ControlPersist master) still holds them, so
    the exit status is polled instead.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while process.returncode is None:
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(EXIT_POLL_SECONDS)
    return True


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL ssh and everything it started in its session."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class SSHClient:
    """Runs one command per ssh invocation against a single login node."""

    def __init__(
        self,
        connection: ConnectionSettings,
        ssh_path: str = "/usr/bin/ssh",
        connect_timeout: int = 10,
        command_timeout: float = 30,
        module_init_script: str | None = None,
        module_name: str | None = None,
        module_command_path: str | None = None,
    ) -> None:
        self.connection = connection
        self.ssh_path = ssh_path
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.module_init_script = module_init_script
        self.module_name = module_name
        self.module_command_path = module_command_path

    @property
    def transport_available(self) -> bool:
        """Check if the ssh binary exists and is executable."""
        return os.path.isfile(self.ssh_path) and os.access(self.ssh_path, os.X_OK)

    def build_arguments(self, command: str) -> list[str]:
        """Build the ssh argument list (without the binary itself)."""
        # BatchMode=yes would also disable SSH_ASKPASS
        batch_mode = "no" if self.connection.password else "yes"
        arguments = [
            "-o", f"BatchMode={batch_mode}",
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        if self.connection.identity_file_path:
            arguments.extend(["-i", os.path.expanduser(self.connection.identity_file_path)])

        arguments.append(self.connection.destination)
        arguments.append(
            build_remote_command(
                command,
                module_init_script=self.module_init_script,
                module_name=self.module_name,
                module_command_path=self.module_command_path,
            )
        )
        return arguments

    @staticmethod
    def _askpass_environment(askpass_path: Path) -> dict[str, str]:
        environment = dict(os.environ)
        environment.setdefault("DISPLAY", "hivesqueue")
        environment["SSH_ASKPASS"] = str(askpass_path)
        environment["SSH_ASKPASS_REQUIRE"] = "force"
        return environment

    async def run_command(self, command: str) -> bytes:
        """
        Run a command on the remote host.

        Args:
            command: The command to run (wrapped in the environment preamble).

        Returns:
            Raw standard output.

        Raises:
            TransportUnavailableError: If the ssh binary is missing.
            LaunchFailedError: If the ssh process could not be started.
            CommandFailedError: On non-zero exit status or timeout.
        """
        if not self.transport_available:
            raise TransportUnavailableError(self.ssh_path)

        askpass_path: Path | None = None
        try:
            environment: dict[str, str] | None = None
            if self.connection.password:
                askpass_path = write_askpass_script(self.connection.password)
                environment = self._askpass_environment(askpass_path)

            arguments = self.build_arguments(command)
            logger.debug(f"Running on {self.connection.destination}: {command}")

            try:
                process = await asyncio.create_subprocess_exec(
                    self.ssh_path,
                    *arguments,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=environment,
                    start_new_session=True,
                )
            except OSError as e:
                raise LaunchFailedError(str(e)) from e

            return await self._collect(process)
        finally:
            if askpass_path is not None:
                askpass_path.unlink(missing_ok=True)

    async def _collect(self, process: asyncio.subprocess.Process) -> bytes:
        stdout = bytearray()
        stderr = bytearray()
        readers = asyncio.gather(_drain(process.stdout, stdout), _drain(process.stderr, stderr))

        try:
            exited = await _wait_for_exit(process, self.command_timeout)
        except asyncio.CancelledError:
            readers.cancel()
            raise
        finally:
            if process.returncode is None:
                _kill_process_group(process)

        timed_out = not exited
        if timed_out:
            logger.error(f"Command timed out after {self.command_timeout}s on {self.connection.destination}")
            await _wait_for_exit(process, DRAIN_GRACE_SECONDS)

        try:
            # Children of ssh may keep the pipes open after it exits
            await asyncio.wait_for(readers, timeout=DRAIN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.debug("Output still open after ssh exited; using partial output")

        exit_code = process.returncode
        if timed_out or exit_code != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            if timed_out:
                timeout_message = f"timed out after {self.command_timeout:g}s"
                message = f"{timeout_message}: {message}" if message else timeout_message
            elif not message:
                message = f"ssh exited with code {exit_code}"
            raise CommandFailedError(message, exit_code=exit_code, timed_out=timed_out)

        return bytes(stdout)
