from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping

from .restart import RestartPolicy

DEFAULT_BINARY = Path("/usr/local/bin/outline-ss-server")
DEFAULT_CONFIG_PATH = Path("/root/shadowbox/persisted-state/outline-ss-server/config.yml")
DEFAULT_METRICS_LOCATION = "127.0.0.1:9092"
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 8091
DEFAULT_KEY_BACKEND = "local"
DEFAULT_PROXY_CHECK_URL = "https://ipinfo.io/json"
REPLAY_HISTORY_SIZE = 10000

# Variables copied from the supervisor's environment into the server's.
DEFAULT_ENV_PASSTHROUGH = ("PATH", "HOME", "LANG", "LC_ALL", "TZ", "TMPDIR")


@dataclass(frozen=True)
class ShadowsocksSettings:
    """Immutable launch and configuration settings for the Shadowsocks server."""

    binary: Path
    config_path: Path
    metrics_location: str = DEFAULT_METRICS_LOCATION
    verbose: bool = False
    ip_country_db: Path | None = None
    ip_asn_db: Path | None = None
    replay_protection: bool = False
    env_passthrough: tuple[str, ...] = DEFAULT_ENV_PASSTHROUGH
    extra_env: Mapping[str, str] = field(default_factory=dict)
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)
    log_dir: Path | None = None
    proxy_check: str | None = None
    proxy_check_url: str = DEFAULT_PROXY_CHECK_URL

    def with_country_metrics(self, ip_country_db: Path) -> "ShadowsocksSettings":
        return replace(self, ip_country_db=Path(ip_country_db))

    def with_asn_metrics(self, ip_asn_db: Path) -> "ShadowsocksSettings":
        return replace(self, ip_asn_db=Path(ip_asn_db))

    def with_replay_protection(self) -> "ShadowsocksSettings":
        return replace(self, replay_protection=True)


@dataclass(frozen=True)
class ServiceCLIArgs:
    """Typed representation of CLI arguments used to boot the supervisor."""

    binary: Path
    config_path: Path
    metrics_location: str = DEFAULT_METRICS_LOCATION
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    verbose: bool = False
    ip_country_db: Path | None = None
    ip_asn_db: Path | None = None
    replay_protection: bool = False
    log_dir: Path | None = None
    key_backend: str = DEFAULT_KEY_BACKEND
    keys_file: Path | None = None
    keys_s3_bucket: str | None = None
    keys_s3_key: str | None = None
    keys_s3_region: str | None = None
    proxy_check: str | None = None
    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)

    def to_settings(self) -> ShadowsocksSettings:
        return ShadowsocksSettings(
            binary=self.binary,
            config_path=self.config_path,
            metrics_location=self.metrics_location,
            verbose=self.verbose,
            ip_country_db=self.ip_country_db,
            ip_asn_db=self.ip_asn_db,
            replay_protection=self.replay_protection,
            restart_policy=self.restart_policy,
            log_dir=self.log_dir,
            proxy_check=self.proxy_check,
        )
