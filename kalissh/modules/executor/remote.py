"""
Remote command execution over SSH.

The executor owns a single logical connection to the target host, reached
through a fixed jump host with password authentication. The channel is a
scarce, stateful resource: commands are serialized, and losing the
connection only requires an explicit reconnect.
"""

import asyncio
import codecs
import logging
import os
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, List, Optional, Protocol, Tuple

from ...config.provider import SSHConfig
from ..errors import (
    ChannelBusyError,
    CommandCancelledError,
    ExecutionError,
    ExecutionTimeoutError,
    RemoteConnectionError,
)

logger = logging.getLogger(__name__)

PROBE_MARKER = "connection_test"
NO_OUTPUT = "Command executed successfully (no output)"
READ_CHUNK = 4096

SSH_OPTIONS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "GlobalKnownHostsFile=/dev/null",
    "-o", "CheckHostIP=no",
    "-o", "HashKnownHosts=no",
    "-o", "UpdateHostKeys=no",
    "-o", "VerifyHostKeyDNS=no",
    "-o", "ServerAliveInterval=10",
    "-o", "ServerAliveCountMax=2",
    "-o", "LogLevel=ERROR",
    "-o", "PasswordAuthentication=yes",
    "-o", "PubkeyAuthentication=no",
    "-o", "PreferredAuthentications=password",
    "-o", "BatchMode=no",
    "-o", "NumberOfPasswordPrompts=3",
]


@dataclass(frozen=True)
class ConnectionState:
    connected: bool = False
    latency_ms: Optional[float] = None
    last_connected: Optional[datetime] = None


class ProgressSink(Protocol):
    def publish(self, message: str) -> bool:
        ...


class RemoteChannel(Protocol):
    """Narrow interface the pipeline depends on."""

    @property
    def state(self) -> ConnectionState:
        ...

    def is_connected(self) -> bool:
        ...

    async def connect(self) -> ConnectionState:
        ...

    async def execute(self, command: str, progress: Optional[ProgressSink] = None) -> str:
        ...

    async def cancel_current(self) -> bool:
        ...

    def disconnect(self) -> None:
        ...


class SSHRemoteExecutor:
    """RemoteChannel implementation that spawns sshpass/ssh per command."""

    def __init__(
        self,
        config: SSHConfig,
        retry_backoff: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize SSH executor.

        Args:
            config: Host, credentials, proxy hop and deadlines
            retry_backoff: Initial delay between connection attempts in seconds
            clock: Monotonic time source used for latency measurement
        """
        self.config = config
        self.retry_backoff = retry_backoff
        self._clock = clock
        self._state = ConnectionState()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._probe_process: Optional[asyncio.subprocess.Process] = None
        self._cancel_requested = False
        self._exec_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state.connected

    @property
    def busy(self) -> bool:
        return self._exec_lock.locked()

    def build_command(self, remote_command: str) -> List[str]:
        """Full argv for running remote_command on the target host."""
        args = ["sshpass", "-e", "ssh", *SSH_OPTIONS]
        args += ["-o", f"ConnectTimeout={int(self.config.connect_timeout)}"]
        if self.config.proxy_host:
            args += [
                "-o",
                "ProxyCommand=ssh -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null "
                f"-W %h:%p {self.config.proxy_host}",
            ]
        args.append(f"{self.config.user}@{self.config.host}")
        args.append(remote_command)
        return args

    async def connect(self) -> ConnectionState:
        """
        Establish (or re-establish) the channel.

        Runs a probe command up to config.connect_attempts times with a
        growing delay between attempts.

        Raises:
            RemoteConnectionError: Every attempt failed or timed out
        """
        async with self._connect_lock:
            attempts = max(1, self.config.connect_attempts)
            delay = self.retry_backoff
            last_error: Optional[RemoteConnectionError] = None

            for attempt in range(1, attempts + 1):
                try:
                    await self._probe()
                    return self._state
                except RemoteConnectionError as e:
                    last_error = e
                    logger.warning(f"SSH connection attempt {attempt}/{attempts} failed: {e}")
                    if self._cancel_requested:
                        break
                    if attempt < attempts:
                        await asyncio.sleep(delay)
                        delay *= 1.5

            raise last_error

    async def execute(self, command: str, progress: Optional[ProgressSink] = None) -> str:
        """
        Run one command on the remote host.

        Args:
            command: Shell command line, passed verbatim to the remote shell
            progress: Optional sink receiving stdout lines as they arrive

        Returns:
            stdout, followed by a STDERR section when stderr is non-empty

        Raises:
            ChannelBusyError: A command is already running
            RemoteConnectionError: Channel was down and reconnecting failed
            ExecutionTimeoutError: config.command_timeout elapsed
            CommandCancelledError: cancel_current() aborted the command
            ExecutionError: Non-zero exit with no stdout, or spawn failure
        """
        if self._exec_lock.locked():
            raise ChannelBusyError("Another command is already running on the remote channel")

        async with self._exec_lock:
            self._cancel_requested = False
            try:
                return await self._run(command, progress)
            finally:
                self._cancel_requested = False

    async def _run(self, command: str, progress: Optional[ProgressSink]) -> str:
        if not self._state.connected:
            try:
                await self.connect()
            except RemoteConnectionError:
                if self._cancel_requested:
                    raise CommandCancelledError("Command cancelled by operator") from None
                raise

        # Cancelled while the channel was being established
        if self._cancel_requested:
            raise CommandCancelledError("Command cancelled by operator")

        logger.info(f"Executing remote command: {command}")

        try:
            process = await self._spawn(command)
        except OSError as e:
            self._mark_disconnected()
            raise ExecutionError(f"Could not start ssh: {e}") from e

        self._process = process
        try:
            stdout, stderr = await asyncio.wait_for(
                self._collect(process, progress), timeout=self.config.command_timeout
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            raise ExecutionTimeoutError(
                f"Command execution timeout after {self.config.command_timeout}s"
            ) from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        finally:
            self._process = None

        if self._cancel_requested:
            raise CommandCancelledError("Command cancelled by operator")

        output = stdout + (f"\nSTDERR:\n{stderr}" if stderr else "")

        if process.returncode == 0 or stdout:
            return output or NO_OUTPUT

        raise ExecutionError(
            f"Command failed with exit code {process.returncode}: {stderr.strip()}"
        )

    async def cancel_current(self) -> bool:
        """
        Abort the in-flight command, if any.

        A command still waiting for the channel to connect is cancelled
        before it is spawned; the connection probe is killed.

        Returns:
            True if a pending or running command was cancelled; False when
            idle, already cancelled, or the command process has exited
        """
        if not self._exec_lock.locked() or self._cancel_requested:
            return False

        process = self._process
        if process is not None and process.returncode is not None:
            return False

        self._cancel_requested = True
        target = process or self._probe_process
        if target is not None and target.returncode is None:
            try:
                target.kill()
            except ProcessLookupError:
                pass
        logger.info("Cancelled in-flight remote command")
        return True

    def disconnect(self) -> None:
        for process in (self._process, self._probe_process):
            if process is not None and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
        self._mark_disconnected()

    async def _probe(self) -> None:
        started = self._clock()
        try:
            process = await self._spawn(f"echo {PROBE_MARKER}")
        except OSError as e:
            self._mark_disconnected()
            raise RemoteConnectionError(f"Could not start ssh: {e}") from e

        self._probe_process = process
        try:
            stdout, stderr = await asyncio.wait_for(
                self._collect(process), timeout=self.config.connect_timeout
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            self._mark_disconnected()
            raise RemoteConnectionError("SSH connection timeout") from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        finally:
            self._probe_process = None

        if process.returncode == 0 and PROBE_MARKER in stdout:
            latency_ms = round((self._clock() - started) * 1000, 1)
            self._state = ConnectionState(
                connected=True,
                latency_ms=latency_ms,
                last_connected=datetime.now(UTC),
            )
            logger.info(
                f"SSH connection established to {self.config.user}@{self.config.host} "
                f"({latency_ms}ms)"
            )
            return

        self._mark_disconnected()
        detail = stderr.strip() or f"exit code {process.returncode}"
        raise RemoteConnectionError(f"SSH connection failed: {detail}")

    async def _spawn(self, remote_command: str) -> asyncio.subprocess.Process:
        env = dict(os.environ)
        # sshpass -e reads the password from here, keeping it out of the process list
        env["SSHPASS"] = self.config.password
        return await asyncio.create_subprocess_exec(
            *self.build_command(remote_command),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )

    @staticmethod
    async def _collect(
        process: asyncio.subprocess.Process, progress: Optional[ProgressSink] = None
    ) -> Tuple[str, str]:
        """Read stdout/stderr to EOF, forwarding complete stdout lines."""
        chunks: List[str] = []
        # Multibyte characters may straddle read boundaries
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        async def pump_stdout() -> None:
            pending = ""
            eof = False
            while not eof:
                data = await process.stdout.read(READ_CHUNK)
                eof = not data
                text = decoder.decode(data, final=eof)
                if not text:
                    continue
                chunks.append(text)
                if progress is None:
                    continue
                pending += text
                *lines, pending = pending.split("\n")
                for line in lines:
                    progress.publish(line.rstrip("\r"))
            if progress is not None and pending:
                progress.publish(pending.rstrip("\r"))

        _, stderr = await asyncio.gather(pump_stdout(), process.stderr.read())
        await process.wait()
        return "".join(chunks), stderr.decode("utf-8", errors="replace")

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    def _mark_disconnected(self) -> None:
        if self._state.connected:
            logger.warning("SSH channel marked disconnected")
        self._state = ConnectionState(
            connected=False,
            latency_ms=None,
            last_connected=self._state.last_connected,
        )
