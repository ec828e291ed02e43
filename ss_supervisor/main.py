from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

import uvicorn

from .api import create_app
from .config import (
    DEFAULT_API_HOST,
    DEFAULT_API_PORT,
    DEFAULT_BINARY,
    DEFAULT_CONFIG_PATH,
    DEFAULT_KEY_BACKEND,
    DEFAULT_METRICS_LOCATION,
    ServiceCLIArgs,
)
from .keysource import KeySourceError, load_access_keys
from .restart import RestartPolicy
from .server import ShadowsocksServer

LOGGER = logging.getLogger("SSSupervisor")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _optional_path(value: str | None) -> Path | None:
    return Path(value).expanduser().resolve() if value else None


def parse_args(argv: Sequence[str] | None = None) -> ServiceCLIArgs:
    parser = argparse.ArgumentParser(
        description="Run and supervise an outline-ss-server process."
    )
    parser.add_argument(
        "--binary",
        type=Path,
        default=Path(os.environ.get("SB_SS_BINARY", DEFAULT_BINARY)),
        help="Path to the outline-ss-server binary.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("SB_SS_CONFIG", DEFAULT_CONFIG_PATH)),
        help="Path of the generated outline-ss-server config file.",
    )
    parser.add_argument(
        "--metrics",
        default=os.environ.get("SB_METRICS_LOCATION", DEFAULT_METRICS_LOCATION),
        help="host:port where outline-ss-server exposes metrics.",
    )
    parser.add_argument(
        "--ip-country-db",
        default=os.environ.get("SB_IP_COUNTRY_DB"),
        help="Optional IP-to-country database for per-country metrics.",
    )
    parser.add_argument(
        "--ip-asn-db",
        default=os.environ.get("SB_IP_ASN_DB"),
        help="Optional IP-to-ASN database for per-ASN metrics.",
    )
    parser.add_argument(
        "--replay-protection",
        action="store_true",
        default=_env_flag("SB_REPLAY_PROTECTION"),
        help="Enable outline-ss-server replay protection.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=_env_flag("SB_VERBOSE"),
        help="Pass -verbose to outline-ss-server.",
    )
    parser.add_argument(
        "--api-host",
        default=DEFAULT_API_HOST,
        help="Host interface for the supervisor HTTP server.",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=int(os.environ.get("SB_API_PORT", DEFAULT_API_PORT)),
        help="Port for the supervisor HTTP server.",
    )
    parser.add_argument(
        "--log-dir",
        default=os.environ.get("SB_LOG_DIR"),
        help="Directory for rotating outline-ss-server log files.",
    )
    parser.add_argument(
        "--key-backend",
        choices=("local", "s3"),
        default=os.environ.get("SB_KEY_BACKEND", DEFAULT_KEY_BACKEND),
        help="Source of the initial key set (defaults to SB_KEY_BACKEND or 'local').",
    )
    parser.add_argument(
        "--keys-file",
        default=os.environ.get("SB_KEYS_FILE"),
        help="YAML/JSON key document used with the 'local' backend.",
    )
    parser.add_argument("--keys-s3-bucket", default=os.environ.get("SB_KEYS_S3_BUCKET"))
    parser.add_argument("--keys-s3-key", default=os.environ.get("SB_KEYS_S3_KEY"))
    parser.add_argument("--keys-s3-region", default=os.environ.get("SB_KEYS_S3_REGION"))
    parser.add_argument(
        "--check-proxy",
        default=os.environ.get("SB_CHECK_PROXY"),
        help="SOCKS proxy URL to probe before the first start (e.g. socks5://127.0.0.1:40000).",
    )
    parser.add_argument(
        "--restart-max",
        type=int,
        default=RestartPolicy.max_restarts,
        help="Restarts allowed per window before pausing (0 disables the breaker).",
    )
    parser.add_argument(
        "--restart-window",
        type=float,
        default=RestartPolicy.window,
        help="Window in seconds used by the restart breaker.",
    )
    parser.add_argument(
        "--restart-max-delay",
        type=float,
        default=RestartPolicy.max_delay,
        help="Upper bound in seconds for the restart backoff.",
    )

    args = parser.parse_args(argv)
    if args.restart_max < 0:
        parser.error("--restart-max must be non-negative.")

    return ServiceCLIArgs(
        binary=args.binary.expanduser(),
        config_path=args.config.expanduser().resolve(),
        metrics_location=args.metrics,
        api_host=args.api_host,
        api_port=args.api_port,
        verbose=args.verbose,
        ip_country_db=_optional_path(args.ip_country_db),
        ip_asn_db=_optional_path(args.ip_asn_db),
        replay_protection=args.replay_protection,
        log_dir=_optional_path(args.log_dir),
        key_backend=args.key_backend,
        keys_file=_optional_path(args.keys_file),
        keys_s3_bucket=args.keys_s3_bucket,
        keys_s3_key=args.keys_s3_key,
        keys_s3_region=args.keys_s3_region,
        proxy_check=args.check_proxy,
        restart_policy=RestartPolicy(
            max_restarts=args.restart_max,
            window=args.restart_window,
            max_delay=args.restart_max_delay,
        ),
    )


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    args = parse_args(argv)

    try:
        initial_keys = load_access_keys(
            backend=args.key_backend,
            path=args.keys_file,
            bucket=args.keys_s3_bucket,
            key=args.keys_s3_key,
            region=args.keys_s3_region,
        )
    except KeySourceError as exc:
        LOGGER.error("Failed to load access keys: %s", exc)
        return 1

    server = ShadowsocksServer(args.to_settings())
    app = create_app(server, initial_keys=initial_keys)
    config = uvicorn.Config(
        app,
        host=args.api_host,
        port=args.api_port,
        log_level="info",
    )

    try:
        uvicorn.Server(config).run()
    except KeyboardInterrupt:
        LOGGER.info("Shutdown requested by user.")

    LOGGER.info("Supervisor shutdown complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
