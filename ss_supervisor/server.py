from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Mapping

from .config import ShadowsocksSettings
from .config_file import write_config_file
from .keysource import partition_access_keys
from .launcher import build_command, build_environment
from .probe import check_proxy_connection
from .supervisor import ProcessSupervisor
from .types import AccessKey, UpdateResult

LOGGER = logging.getLogger("SSSupervisor.Server")


class ShadowsocksServer:
    """Keep the outline-ss-server config file and process in sync with a key set.

    ``update`` always writes the full key set to disk before touching the
    process: the first call starts the server, later calls ask it to reload.
    """

    def __init__(
        self,
        settings: ShadowsocksSettings,
        *,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self._settings = settings
        self._supervisor = supervisor or ProcessSupervisor(
            policy=settings.restart_policy,
            log_dir=settings.log_dir,
        )
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> ShadowsocksSettings:
        return self._settings

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    def configure_country_metrics(self, ip_country_db: Path) -> "ShadowsocksServer":
        self._reconfigure(self._settings.with_country_metrics(ip_country_db))
        return self

    def configure_asn_metrics(self, ip_asn_db: Path) -> "ShadowsocksServer":
        self._reconfigure(self._settings.with_asn_metrics(ip_asn_db))
        return self

    def enable_replay_protection(self) -> "ShadowsocksServer":
        self._reconfigure(self._settings.with_replay_protection())
        return self

    def with_extra_env(self, env: Mapping[str, str]) -> "ShadowsocksServer":
        merged = {**self._settings.extra_env, **env}
        self._reconfigure(replace(self._settings, extra_env=merged))
        return self

    async def update(
        self, keys: Iterable[AccessKey | Mapping[str, Any]]
    ) -> UpdateResult:
        """Write the key set and start or reload the server.

        Raises ``ConfigWriteError`` when the config file cannot be written; the
        previous file is left in place and the process is not signalled.
        """

        async with self._lock:
            parsed, invalid = partition_access_keys(keys)
            config_path = self._settings.config_path
            written = await asyncio.to_thread(write_config_file, config_path, parsed)
            skipped = invalid + [key.id for key in parsed if key not in written]

            if not self._supervisor.started:
                await self._start()
                action = "start"
            else:
                self._supervisor.reload()
                action = "reload"

            return UpdateResult(
                config_path=str(config_path),
                written=sorted(key.id for key in written),
                skipped=skipped,
                action=action,
            )

    async def shutdown(self) -> None:
        await self._supervisor.shutdown()

    async def _start(self) -> None:
        settings = self._settings
        LOGGER.info("Starting Shadowsocks service...")
        if settings.proxy_check:
            await check_proxy_connection(
                settings.proxy_check, url=settings.proxy_check_url
            )
        await self._supervisor.start(build_command(settings), build_environment(settings))

    def _reconfigure(self, settings: ShadowsocksSettings) -> None:
        if self._supervisor.started:
            raise RuntimeError(
                "Server settings cannot change after the server has started."
            )
        self._settings = settings
