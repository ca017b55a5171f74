"""Supervision of the external tunneling helper process."""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import structlog

from ipfsbridge.core.exceptions import TunnelSpawnError
from ipfsbridge.core.session import BridgeContext
from ipfsbridge.observability.metrics import TUNNEL_RESTARTS
from ipfsbridge.tunnel.output import UrlExtractor, extract_public_url

logger = structlog.get_logger()

# How long to keep reading buffered output after the helper has exited.
_DRAIN_TIMEOUT = 1.0


class TunnelState(Enum):
    """Supervisor lifecycle state."""

    STARTING = "starting"
    ESTABLISHED = "established"
    FAILED = "failed"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class ProcessHandle(Protocol):
    """The subset of ``asyncio.subprocess.Process`` the supervisor uses."""

    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


Launcher = Callable[[Sequence[str]], Awaitable[ProcessHandle]]


async def spawn_process(argv: Sequence[str]) -> ProcessHandle:
    return await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


@dataclass
class RestartPolicy:
    """Delays between helper runs.

    A normal exit restarts quickly; a failure to even start waits longer so a
    broken environment does not hot-loop.
    """

    exit_delay: float = 1.0
    error_delay: float = 5.0
    max_restarts: int | None = None  # None = retry forever

    def delay_for(self, reason: str) -> float:
        return self.error_delay if reason == "error" else self.exit_delay

    def allows(self, restart_count: int) -> bool:
        return self.max_restarts is None or restart_count < self.max_restarts


@dataclass
class TunnelProcess:
    """One helper run. Replaced, never reused, on every restart."""

    attempt: int
    restart_count: int
    started_at: float
    handle: ProcessHandle | None = None
    state: TunnelState = TunnelState.STARTING
    public_url: str | None = None
    exit_code: int | None = None

    @property
    def is_active(self) -> bool:
        return self.state in (TunnelState.STARTING, TunnelState.ESTABLISHED)


class TunnelSupervisor:
    """Keeps a public tunnel to the gateway alive indefinitely.

    Runs a single control loop: spawn the helper, watch its stdout for the
    public URL announcement, wait for it to exit, sleep according to the
    restart policy, repeat. A new helper is never spawned before the previous
    one has exited.
    """

    def __init__(
        self,
        context: BridgeContext,
        port: int | None = None,
        launcher: Launcher = spawn_process,
        extract_url: UrlExtractor = extract_public_url,
        policy: RestartPolicy | None = None,
    ) -> None:
        self.context = context
        self.config = context.tunnel
        self.port = port or context.gateway.listen_port
        self.policy = policy or RestartPolicy(
            exit_delay=self.config.restart_delay,
            error_delay=self.config.error_restart_delay,
            max_restarts=self.config.max_restarts,
        )
        self._launcher = launcher
        self._extract_url = extract_url
        self._clock = context.clock

        self._state = TunnelState.STOPPED
        self._current: TunnelProcess | None = None
        self._public_url: str | None = None
        self._attempts = 0
        self._restart_count = 0
        self._running = False
        self._task: asyncio.Task[None] | None = None

        self._state_hooks: list[Callable[[TunnelState], None]] = []
        self._url_hooks: list[Callable[[str], None]] = []

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def current(self) -> TunnelProcess | None:
        """The live helper run, if any."""
        return self._current

    @property
    def public_url(self) -> str | None:
        """Last announced public URL."""
        return self._public_url

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "public_url": self._public_url,
            "attempts": self._attempts,
            "restart_count": self._restart_count,
            "port": self.port,
        }

    def add_state_hook(self, hook: Callable[[TunnelState], None]) -> None:
        self._state_hooks.append(hook)

    def add_url_hook(self, hook: Callable[[str], None]) -> None:
        """Register a callback invoked with each newly announced public URL."""
        self._url_hooks.append(hook)

    def _set_state(self, state: TunnelState) -> None:
        if self._state != state:
            old_state = self._state
            self._state = state
            logger.debug("Tunnel state changed", old=old_state.value, new=state.value)
            for hook in self._state_hooks:
                try:
                    hook(state)
                except Exception as e:
                    logger.warning("State hook error", error=str(e))

    def build_command(self) -> list[str]:
        return shlex.split(
            self.config.tunnel_command.format(
                port=self.port,
                subdomain=self.config.tunnel_subdomain,
            )
        )

    def start(self) -> asyncio.Task[None]:
        """Run the control loop in a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self) -> None:
        """Control loop. Returns only on stop() or when the restart cap is hit."""
        self._running = True
        try:
            while self._running:
                reason = await self._run_attempt()
                if not self._running:
                    break
                if not self.policy.allows(self._restart_count):
                    logger.error("Tunnel restart limit reached", restarts=self._restart_count)
                    break

                delay = self.policy.delay_for(reason)
                self._set_state(TunnelState.RESTARTING)
                TUNNEL_RESTARTS.labels(reason=reason).inc()
                logger.info(
                    "Restarting tunnel",
                    reason=reason,
                    delay_sec=delay,
                    restart_count=self._restart_count + 1,
                )
                await self._clock.sleep(delay)
                self._restart_count += 1
        except asyncio.CancelledError:
            self._running = False
        finally:
            self._current = None
            self._set_state(TunnelState.STOPPED)

    async def _run_attempt(self) -> str:
        """Run one helper to completion. Returns "exit" or "error"."""
        self._attempts += 1
        process = TunnelProcess(
            attempt=self._attempts,
            restart_count=self._restart_count,
            started_at=self._clock.now(),
        )
        self._current = process
        self._set_state(TunnelState.STARTING)

        command = self.config.tunnel_command
        try:
            # A malformed template fails here, like a missing binary would.
            argv = self.build_command()
            command = " ".join(argv)
            process.handle = await self._launcher(argv)
        except Exception as e:
            err = TunnelSpawnError(command, str(e) or type(e).__name__)
            logger.error("Tunnel failed to start", code=err.code, error=err.message)
            self._fail(process)
            return "error"

        logger.info(
            "Tunnel helper started",
            attempt=process.attempt,
            pid=getattr(process.handle, "pid", None),
            port=self.port,
        )

        readers = [
            asyncio.create_task(self._read_stdout(process)),
            asyncio.create_task(self._read_stderr(process)),
        ]
        try:
            process.exit_code = await process.handle.wait()
            await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT)
        except asyncio.CancelledError:
            await self._terminate(process.handle)
            raise
        finally:
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

        logger.warning(
            "Tunnel closed",
            code=process.exit_code,
            attempt=process.attempt,
            public_url=process.public_url,
        )
        self._fail(process)
        return "exit"

    def _fail(self, process: TunnelProcess) -> None:
        process.state = TunnelState.FAILED
        self._current = None
        self._set_state(TunnelState.FAILED)

    def _establish(self, process: TunnelProcess, url: str) -> None:
        process.public_url = url
        process.state = TunnelState.ESTABLISHED
        self._public_url = url
        self._set_state(TunnelState.ESTABLISHED)
        logger.info(
            "Tunnel established",
            public_url=url,
            local_url=self.context.local_url,
            session=self.context.session.fingerprint,
            attempt=process.attempt,
        )
        for hook in self._url_hooks:
            try:
                hook(url)
            except Exception as e:
                logger.warning("URL hook error", error=str(e))

    async def _read_stdout(self, process: TunnelProcess) -> None:
        stream = process.handle.stdout if process.handle else None
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            logger.debug("Tunnel output", line=line)
            url = self._extract_url(line)
            if url and process.state == TunnelState.STARTING:
                self._establish(process, url)

    async def _read_stderr(self, process: TunnelProcess) -> None:
        # Logged only. Exit is the sole restart trigger.
        stream = process.handle.stderr if process.handle else None
        if stream is None:
            return
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                logger.warning("Tunnel stderr", line=line)

    async def _terminate(self, handle: ProcessHandle) -> None:
        if handle.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            handle.terminate()
        try:
            await asyncio.wait_for(handle.wait(), timeout=self.config.stop_grace_period)
        except TimeoutError:
            logger.warning("Tunnel helper did not exit, killing")
            with contextlib.suppress(ProcessLookupError):
                handle.kill()
            await handle.wait()

    async def stop(self) -> None:
        """Terminate the helper and end the control loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        elif self._current and self._current.handle:
            await self._terminate(self._current.handle)
        self._task = None
        logger.info("Tunnel supervisor stopped", stats=self.stats)
