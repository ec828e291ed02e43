from __future__ import annotations

import json
from pathlib import Path

import boto3
import pytest
from moto import mock_aws

from ss_supervisor.keysource import (
    KeySourceError,
    LocalKeySource,
    S3KeySource,
    load_access_keys,
    parse_access_keys,
    partition_access_keys,
)
from ss_supervisor.types import AccessKey

YAML_DOCUMENT = """\
keys:
  - id: alpha
    secret: s-a
    cipher: chacha20-ietf-poly1305
    port: 9000
  - id: beta
    secret: s-b
    cipher: aes-256-gcm
    port: 9001
    prefix: "POST "
"""


def test_local_source_reads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "keys.yml"
    path.write_text(YAML_DOCUMENT, encoding="utf-8")

    keys = LocalKeySource(path).load()

    assert [key.id for key in keys] == ["alpha", "beta"]
    assert keys[1].to_config()["prefix"] == "POST "


def test_local_source_reads_bare_json_list(tmp_path: Path) -> None:
    path = tmp_path / "keys.json"
    path.write_text(
        json.dumps([{"id": "k1", "secret": "s", "cipher": "aes-128-gcm"}]),
        encoding="utf-8",
    )

    keys = LocalKeySource(path).load()

    assert keys == [AccessKey(id="k1", secret="s", cipher="aes-128-gcm")]


def test_local_source_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(KeySourceError):
        LocalKeySource(tmp_path / "missing.yml").load()


def test_local_source_rejects_scalar_document(tmp_path: Path) -> None:
    path = tmp_path / "keys.yml"
    path.write_text("just a string\n", encoding="utf-8")

    with pytest.raises(KeySourceError):
        LocalKeySource(path).load()


def test_parse_access_keys_skips_invalid_records() -> None:
    keys = parse_access_keys(
        [
            {"id": "ok", "secret": "s", "cipher": "aes-256-gcm"},
            {"id": "no-secret", "cipher": "aes-256-gcm"},
            "not-a-mapping",
        ]
    )

    assert [key.id for key in keys] == ["ok"]


def test_partition_access_keys_labels_invalid_records() -> None:
    keys, invalid = partition_access_keys(
        [
            {"id": "no-secret", "cipher": "aes-256-gcm"},
            {"id": "ok", "secret": "s", "cipher": "aes-256-gcm"},
            ["not", "a", "mapping"],
        ]
    )

    assert [key.id for key in keys] == ["ok"]
    assert invalid == ["no-secret", "#2"]


def test_load_access_keys_without_file_returns_empty() -> None:
    assert (
        load_access_keys(backend="local", path=None, bucket=None, key=None, region=None)
        == []
    )


def test_load_access_keys_unknown_backend() -> None:
    with pytest.raises(KeySourceError):
        load_access_keys(backend="vault", path=None, bucket=None, key=None, region=None)


@mock_aws
def test_s3_source_downloads_key_document() -> None:
    bucket = "test-bucket"
    region = "us-east-1"

    s3 = boto3.client("s3", region_name=region)
    s3.create_bucket(Bucket=bucket)
    s3.put_object(Bucket=bucket, Key="prod/keys.yml", Body=YAML_DOCUMENT.encode())

    keys = load_access_keys(
        backend="s3", path=None, bucket=bucket, key="prod/keys.yml", region=region
    )

    assert [key.id for key in keys] == ["alpha", "beta"]


@mock_aws
def test_s3_source_missing_object_raises() -> None:
    bucket = "empty-bucket"
    region = "us-east-1"

    s3 = boto3.client("s3", region_name=region)
    s3.create_bucket(Bucket=bucket)

    source = S3KeySource(bucket=bucket, key="keys.yml", region=region)

    with pytest.raises(KeySourceError):
        source.load()


def test_s3_source_requires_bucket_and_key() -> None:
    with pytest.raises(KeySourceError):
        S3KeySource(bucket="", key="keys.yml")
    with pytest.raises(KeySourceError):
        S3KeySource(bucket="bucket", key=None)
