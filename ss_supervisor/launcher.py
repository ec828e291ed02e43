from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import IO, Awaitable, Callable, Mapping, Sequence

from .config import REPLAY_HISTORY_SIZE, ShadowsocksSettings

LOGGER = logging.getLogger("SSSupervisor.Launcher")
CHILD_LOGGER_NAME = "SSSupervisor.Child"

_LOG_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 5
_CHUNK_BYTES = 64 * 1024

SpawnFunc = Callable[
    ..., Awaitable[tuple[asyncio.subprocess.Process, list["asyncio.Task[None]"]]]
]


def build_command(settings: ShadowsocksSettings) -> list[str]:
    """Build the server command line from the current settings."""

    command = [
        str(settings.binary),
        "-config",
        str(settings.config_path),
        "-metrics",
        settings.metrics_location,
    ]
    if settings.ip_country_db:
        command.extend(["-ip_country_db", str(settings.ip_country_db)])
    if settings.ip_asn_db:
        command.extend(["-ip_asn_db", str(settings.ip_asn_db)])
    if settings.verbose:
        command.append("-verbose")
    if settings.replay_protection:
        command.append(f"--replay_history={REPLAY_HISTORY_SIZE}")
    return command


def build_environment(
    settings: ShadowsocksSettings, source: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Copy only the allow-listed variables into the server environment."""

    source = os.environ if source is None else source
    env = {name: source[name] for name in settings.env_passthrough if name in source}
    env.update(settings.extra_env)
    return env


def format_command(command: Sequence[str]) -> str:
    return " ".join(f'"{part}"' for part in command)


def _configure_child_logger(log_dir: Path | None) -> logging.Logger:
    logger = logging.getLogger(CHILD_LOGGER_NAME)
    if log_dir is None:
        return logger

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "outline-ss-server.log"
    if not any(isinstance(handler, RotatingFileHandler) for handler in logger.handlers):
        handler = RotatingFileHandler(
            log_path, maxBytes=_LOG_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8"
        )
        formatter = logging.Formatter(
            "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def _passthrough(target: IO[str], data: bytes) -> None:
    buffer = getattr(target, "buffer", None)
    if buffer is not None:
        buffer.write(data)
        buffer.flush()
    else:
        target.write(data.decode("utf-8", errors="replace"))
        target.flush()


async def _pump_stream(
    reader: asyncio.StreamReader,
    logger: logging.Logger,
    level: int,
    label: str,
    target: IO[str],
) -> None:
    # Reads raw chunks until EOF so an overlong line can never stall the pipe.
    pending = b""
    while True:
        chunk = await reader.read(_CHUNK_BYTES)
        if not chunk:
            break
        try:
            _passthrough(target, chunk)
        except (OSError, ValueError) as exc:
            LOGGER.debug("Dropped %s passthrough chunk: %s", label, exc)

        *lines, pending = (pending + chunk).split(b"\n")
        if len(pending) >= _CHUNK_BYTES:
            lines.append(pending)
            pending = b""
        for line in lines:
            _log_line(logger, level, label, line)

    if pending:
        _log_line(logger, level, label, pending)


def _log_line(logger: logging.Logger, level: int, label: str, line: bytes) -> None:
    text = line.decode("utf-8", errors="replace").rstrip()
    if text:
        logger.log(level, "Shadowsocks %s: %s", label, text)


async def spawn_server(
    command: Sequence[str],
    env: Mapping[str, str],
    *,
    log_dir: Path | None = None,
) -> tuple[asyncio.subprocess.Process, list["asyncio.Task[None]"]]:
    """Launch the server binary and start pumping its output.

    Raises ``OSError`` when the binary cannot be executed.
    """

    logger = _configure_child_logger(log_dir)
    process = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env),
    )

    loop = asyncio.get_running_loop()
    pumps: list[asyncio.Task[None]] = []
    if process.stdout is not None:
        pumps.append(
            loop.create_task(
                _pump_stream(process.stdout, logger, logging.INFO, "stdout", sys.stdout)
            )
        )
    if process.stderr is not None:
        pumps.append(
            loop.create_task(
                _pump_stream(
                    process.stderr, logger, logging.ERROR, "stderr", sys.stderr
                )
            )
        )

    LOGGER.info("Launched outline-ss-server PID=%s.", process.pid)
    return process, pumps
