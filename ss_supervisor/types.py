from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class AccessKey(BaseModel):
    """A single Shadowsocks access key as written to the server config."""

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    secret: str
    cipher: str
    port: Optional[int] = None

    def to_config(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ProcessState(str, enum.Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class SupervisorEvent(str, enum.Enum):
    LAUNCH_SUCCEEDED = "launch_succeeded"
    LAUNCH_FAILED = "launch_failed"
    PROCESS_EXITED = "process_exited"
    RELOAD_REQUESTED = "reload_requested"
    SHUTDOWN_REQUESTED = "shutdown_requested"


@dataclass
class ManagedProcess:
    """Tracking metadata for a launched server process."""

    process: asyncio.subprocess.Process
    command: Tuple[str, ...]
    launch_number: int
    started_at: float
    pumps: List["asyncio.Task[None]"] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of pushing a key set to the server."""

    config_path: str
    written: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    action: Literal["start", "reload"] = "start"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of an outbound connectivity check through the proxy."""

    ok: bool
    status_code: int | None = None
    detail: str = ""
