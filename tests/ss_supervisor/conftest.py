from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Callable, List, Mapping, Sequence

import pytest


class DummyProcess:
    """Stand-in for asyncio.subprocess.Process driven by the test."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.signals: List[int] = []
        self._exited = asyncio.Event()

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError(f"process {self.pid} already exited")
        self.signals.append(sig)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)
        self.exit(-signal.SIGTERM)

    def kill(self) -> None:
        self.exit(-signal.SIGKILL)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeSpawner:
    """Records launch requests and hands back DummyProcess instances."""

    def __init__(self, *, failures: int = 0) -> None:
        self.calls: List[tuple[List[str], dict[str, str], Path | None]] = []
        self.processes: List[DummyProcess] = []
        self._failures = failures

    async def __call__(
        self,
        command: Sequence[str],
        env: Mapping[str, str],
        *,
        log_dir: Path | None = None,
    ) -> tuple[DummyProcess, list]:
        self.calls.append((list(command), dict(env), log_dir))
        if self._failures:
            self._failures -= 1
            raise FileNotFoundError(2, "No such file or directory", command[0])
        process = DummyProcess(pid=4000 + len(self.calls))
        self.processes.append(process)
        return process, []

    @property
    def latest(self) -> DummyProcess:
        return self.processes[-1]


async def settle(predicate: Callable[[], bool], attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate`` holds or attempts run out."""

    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def failing_spawner() -> FakeSpawner:
    return FakeSpawner(failures=1)


@pytest.fixture(name="settle")
def settle_fixture() -> Callable[..., object]:
    return settle
