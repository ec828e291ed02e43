from __future__ import annotations

"""
Key source abstraction for hydrating the initial set of access keys.

The supervisor normally receives key sets from key-management tooling through
the HTTP control surface. At boot it can seed the server from a key document
so the proxy comes up serving keys before anything calls in.

Key document format
-------------------
Either YAML or JSON, holding a mapping with a `keys` list or a bare list:

    keys:
      - id: alpha
        secret: ...
        cipher: chacha20-ietf-poly1305
        port: 9000

Records that fail validation are logged and skipped rather than aborting the
load. When using S3, the execution role needs `s3:GetObject` on the key
document.

Additional key sources can be registered by implementing the `KeySource`
protocol.
"""

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, Sequence, runtime_checkable

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from .types import AccessKey

LOGGER = logging.getLogger(__name__)


class KeySourceError(RuntimeError):
    """Raised when access keys cannot be loaded from the configured backend."""


@runtime_checkable
class KeySource(Protocol):
    """Protocol for loading an initial access key set."""

    backend_name: str

    def load(self) -> list[AccessKey]: ...


def partition_access_keys(
    records: Iterable[AccessKey | Mapping[str, Any]],
) -> tuple[list[AccessKey], list[str]]:
    """Validate records into access keys; also return labels of invalid records.

    An invalid record is labelled by its id when it has one, else by ``#<index>``.
    """

    keys: list[AccessKey] = []
    invalid: list[str] = []
    for index, record in enumerate(records):
        if isinstance(record, AccessKey):
            keys.append(record)
            continue
        try:
            keys.append(AccessKey.model_validate(record))
        except ValidationError as exc:
            record_id = record.get("id") if isinstance(record, Mapping) else None
            LOGGER.warning(
                "Skipping invalid access key record #%s (id=%s): %s",
                index,
                record_id,
                exc.errors(include_url=False),
            )
            invalid.append(str(record_id) if record_id is not None else f"#{index}")
    return keys, invalid


def parse_access_keys(records: Iterable[AccessKey | Mapping[str, Any]]) -> list[AccessKey]:
    """Validate records into access keys, skipping the ones that do not validate."""

    keys, _ = partition_access_keys(records)
    return keys


def _parse_document(text: str, source: str) -> list[AccessKey]:
    try:
        document = yaml.safe_load(text) if text.strip() else None
    except yaml.YAMLError as exc:
        raise KeySourceError(f"Key document {source} is not valid YAML/JSON: {exc}") from exc

    if document is None:
        return []
    if isinstance(document, Mapping):
        document = document.get("keys") or []
    if not isinstance(document, list):
        raise KeySourceError(
            f"Key document {source} must hold a 'keys' list or a bare list."
        )
    return parse_access_keys(document)


class LocalKeySource:
    """Reads keys from a YAML or JSON file on disk."""

    backend_name = "local"

    def __init__(self, path: Path) -> None:
        self._path = path.expanduser().resolve()

    def load(self) -> list[AccessKey]:
        path = self._path
        if not path.exists():
            raise KeySourceError(f"Key file does not exist: {path}")
        if not path.is_file():
            raise KeySourceError(f"Key path is not a file: {path}")
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise KeySourceError(f"Unable to read key file {path}: {exc}") from exc
        return _parse_document(text, str(path))


class S3KeySource:
    """Fetches the key document from an S3 object."""

    backend_name = "s3"

    def __init__(
        self,
        bucket: str,
        key: str | None,
        *,
        region: str | None = None,
    ) -> None:
        if not bucket:
            raise KeySourceError("SB_KEYS_S3_BUCKET is required for S3 backend.")
        if not key:
            raise KeySourceError("SB_KEYS_S3_KEY is required for S3 backend.")

        self.bucket = bucket
        self.key = key.lstrip("/")
        self.region = region
        self._session = (
            boto3.session.Session(region_name=region)
            if region
            else boto3.session.Session()
        )

    def load(self) -> list[AccessKey]:
        LOGGER.info("Loading access keys from s3://%s/%s", self.bucket, self.key)
        s3 = self._session.client("s3")
        try:
            response = s3.get_object(Bucket=self.bucket, Key=self.key)
            body = response["Body"].read()
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code")
            if error_code in {"404", "NoSuchKey"}:
                raise KeySourceError(
                    f"No key document found at s3://{self.bucket}/{self.key}"
                ) from exc
            raise KeySourceError(f"Failed to fetch access keys from S3: {exc}") from exc
        except BotoCoreError as exc:
            raise KeySourceError(f"Failed to fetch access keys from S3: {exc}") from exc

        return _parse_document(
            body.decode("utf-8", errors="replace"), f"s3://{self.bucket}/{self.key}"
        )


def load_access_keys(
    *,
    backend: str,
    path: Path | None,
    bucket: str | None,
    key: str | None,
    region: str | None,
) -> list[AccessKey]:
    """Instantiate the correct key source for the requested backend and load keys."""

    backend = (backend or LocalKeySource.backend_name).lower()
    if backend == LocalKeySource.backend_name:
        if path is None:
            LOGGER.info("No key file configured; starting with an empty key set.")
            return []
        source: KeySource = LocalKeySource(path)
    elif backend == S3KeySource.backend_name:
        source = S3KeySource(bucket=bucket or "", key=key, region=region)
    else:
        raise KeySourceError(f"Unsupported key backend '{backend}'.")

    keys = source.load()
    LOGGER.info("Loaded %s access key(s) using backend '%s'.", len(keys), backend)
    return keys


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Load and validate an access key document."
    )
    parser.add_argument(
        "--backend",
        default=os.environ.get("SB_KEY_BACKEND", LocalKeySource.backend_name),
        choices=("local", "s3"),
        help="Key backend to use (defaults to SB_KEY_BACKEND or 'local').",
    )
    parser.add_argument(
        "--keys-file",
        type=Path,
        default=os.environ.get("SB_KEYS_FILE"),
        help="Local key document when using the 'local' backend.",
    )
    parser.add_argument("--bucket", default=os.environ.get("SB_KEYS_S3_BUCKET"))
    parser.add_argument("--key", default=os.environ.get("SB_KEYS_S3_KEY"))
    parser.add_argument("--region", default=os.environ.get("SB_KEYS_S3_REGION"))
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> list[AccessKey]:
    args = _parse_cli_args(argv)
    keys = load_access_keys(
        backend=args.backend,
        path=Path(args.keys_file) if args.keys_file else None,
        bucket=args.bucket,
        key=args.key,
        region=args.region,
    )
    # Secrets stay out of the summary.
    print(json.dumps([{"id": k.id, "cipher": k.cipher} for k in keys]))
    return keys


if __name__ == "__main__":
    main()
