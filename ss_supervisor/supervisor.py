from __future__ import annotations

import asyncio
import logging
import signal
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Sequence

from .launcher import SpawnFunc, format_command, spawn_server
from .restart import RestartPolicy, RestartTracker
from .types import ManagedProcess, ProcessState, SupervisorEvent

LOGGER = logging.getLogger("SSSupervisor.Supervisor")

_SHUTDOWN_TIMEOUT = 10.0

_EVENT_STATES: Dict[SupervisorEvent, ProcessState] = {
    SupervisorEvent.LAUNCH_SUCCEEDED: ProcessState.RUNNING,
    SupervisorEvent.LAUNCH_FAILED: ProcessState.ABSENT,
    SupervisorEvent.PROCESS_EXITED: ProcessState.EXITED,
    SupervisorEvent.SHUTDOWN_REQUESTED: ProcessState.STOPPED,
}


def describe_exit(returncode: int | None) -> tuple[int | None, str | None]:
    """Split a returncode into (exit code, signal name)."""

    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"signal {-returncode}"


class ProcessSupervisor:
    """Own the single outline-ss-server process: launch, reload and restart it."""

    def __init__(
        self,
        *,
        policy: RestartPolicy | None = None,
        spawn_fn: SpawnFunc = spawn_server,
        log_dir: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tracker = RestartTracker(policy or RestartPolicy(), clock=clock)
        self._spawn = spawn_fn
        self._log_dir = log_dir
        self._clock = clock
        self._state = ProcessState.ABSENT
        self._command: tuple[str, ...] | None = None
        self._env: dict[str, str] = {}
        self._current: ManagedProcess | None = None
        self._launches = 0
        self._last_exit: int | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def started(self) -> bool:
        return self._command is not None

    @property
    def is_running(self) -> bool:
        current = self._current
        return current is not None and current.process.returncode is None

    @property
    def launch_count(self) -> int:
        return self._launches

    @property
    def command(self) -> tuple[str, ...] | None:
        return self._command

    async def start(self, command: Sequence[str], env: Mapping[str, str]) -> None:
        """Launch the server for the first time and keep it running afterwards."""

        if self._command is not None:
            raise RuntimeError("The Shadowsocks server has already been started.")
        if self._stopping:
            raise RuntimeError("The supervisor has been shut down.")

        self._command = tuple(command)
        self._env = dict(env)
        LOGGER.info("======== Starting Outline Shadowsocks Service ========")
        await self._launch()

    def reload(self) -> bool:
        """Ask the running server to re-read its config file (SIGHUP)."""

        self._dispatch(SupervisorEvent.RELOAD_REQUESTED)
        current = self._current
        if current is None or current.process.returncode is not None:
            LOGGER.info(
                "No running outline-ss-server to reload; the next launch reads the new config."
            )
            return False

        try:
            current.process.send_signal(signal.SIGHUP)
        except ProcessLookupError as exc:
            LOGGER.warning(
                "Failed to signal outline-ss-server (pid=%s) to reload: %s",
                current.pid,
                exc,
            )
            return False
        LOGGER.info("Sent SIGHUP to outline-ss-server (pid=%s).", current.pid)
        return True

    async def shutdown(self, timeout: float = _SHUTDOWN_TIMEOUT) -> None:
        """Stop the server and suppress any further restarts."""

        if self._stopping and self._state is ProcessState.STOPPED:
            return
        self._stopping = True

        restart_task = self._restart_task
        if restart_task is not None and not restart_task.done():
            restart_task.cancel()
            await asyncio.gather(restart_task, return_exceptions=True)

        current = self._current
        if current is not None and current.process.returncode is None:
            LOGGER.info("Terminating outline-ss-server (pid=%s).", current.pid)
            try:
                current.process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(current.process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "outline-ss-server did not exit within %.1fs; forcing kill.",
                    timeout,
                )
                try:
                    current.process.kill()
                except ProcessLookupError:
                    pass
                await current.process.wait()

        watch_task = self._watch_task
        if watch_task is not None and not watch_task.done():
            await asyncio.gather(watch_task, return_exceptions=True)

        self._dispatch(SupervisorEvent.SHUTDOWN_REQUESTED)

    def snapshot(self) -> Dict[str, Any]:
        current = self._current
        return {
            "state": self._state.value,
            "pid": current.pid if current is not None else None,
            "launches": self._launches,
            "last_exit_code": self._last_exit,
            "restart_pending": self._restart_task is not None
            and not self._restart_task.done(),
        }

    async def _launch(self) -> None:
        if self._stopping or self._command is None:
            return

        self._state = ProcessState.STARTING
        self._launches += 1
        LOGGER.info("%s", format_command(self._command))
        LOGGER.info(
            "Passing environment variables: %s", ", ".join(sorted(self._env)) or "(none)"
        )
        try:
            process, pumps = await self._spawn(
                self._command, self._env, log_dir=self._log_dir
            )
        except OSError as exc:
            LOGGER.error("Error spawning outline-ss-server: %s", exc)
            self._dispatch(SupervisorEvent.LAUNCH_FAILED)
            self._schedule_restart(self._tracker.next_delay(None))
            return

        managed = ManagedProcess(
            process=process,
            command=self._command,
            launch_number=self._launches,
            started_at=self._clock(),
            pumps=list(pumps),
        )
        self._current = managed
        self._dispatch(SupervisorEvent.LAUNCH_SUCCEEDED)
        self._watch_task = asyncio.get_running_loop().create_task(
            self._watch(managed)
        )

        if self._stopping:
            LOGGER.info(
                "Shutdown requested during launch; terminating pid=%s.", managed.pid
            )
            try:
                process.terminate()
            except ProcessLookupError:
                pass

    async def _watch(self, managed: ManagedProcess) -> None:
        try:
            returncode = await managed.process.wait()
        except asyncio.CancelledError:
            LOGGER.info("Exit watcher for pid=%s cancelled.", managed.pid)
            raise
        except Exception as exc:
            LOGGER.exception("Exit watcher for pid=%s failed: %s", managed.pid, exc)
            try:
                managed.process.kill()
            except ProcessLookupError:
                pass
            returncode = managed.process.returncode

        uptime = self._clock() - managed.started_at
        if self._current is managed:
            self._current = None
        self._last_exit = returncode
        code, signal_name = describe_exit(returncode)
        LOGGER.info(
            "outline-ss-server has exited. Code: %s, Signal: %s", code, signal_name
        )
        if self._stopping:
            return

        self._dispatch(SupervisorEvent.PROCESS_EXITED)
        delay = self._tracker.next_delay(uptime)
        LOGGER.info("Restarting in %.1fs.", delay)
        self._schedule_restart(delay)

    def _schedule_restart(self, delay: float) -> None:
        if self._stopping:
            return
        self._state = ProcessState.BACKOFF
        self._restart_task = asyncio.get_running_loop().create_task(
            self._restart_after(delay)
        )

    async def _restart_after(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self._launch()

    def _dispatch(self, event: SupervisorEvent) -> None:
        previous = self._state
        target = _EVENT_STATES.get(event)
        if target is not None:
            self._state = target
        LOGGER.debug(
            "Supervisor event %s: %s -> %s",
            event.value,
            previous.value,
            self._state.value,
        )
