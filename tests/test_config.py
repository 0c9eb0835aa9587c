"""Tests for configuration resolution: default < local < environment < CLI."""

import logging

import pytest
import yaml
from pydantic import ValidationError

from pixelqueue.config import (
    LOG_FORMAT,
    configure_logging,
    env_overrides,
    load_yaml,
    merge_dicts,
    resolve_config,
)


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """Run from an empty directory with a config/ folder."""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config").mkdir()
    return tmp_path / "config"


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data))


def test_defaults_without_files(config_dir):
    """Test that built-in defaults apply when no YAML exists."""
    config = resolve_config(environ={})
    assert config.database.url == "sqlite:///pixelqueue.db"
    assert config.storage.backend == "local"
    assert config.worker.concurrency == 1
    assert config.worker.stale_after_s == 900


def test_local_overrides_default(config_dir):
    write_yaml(config_dir / "default.yaml", {"worker": {"concurrency": 2, "poll_interval_s": 1.0}})
    write_yaml(config_dir / "local.yaml", {"worker": {"concurrency": 6}})

    config = resolve_config(environ={})
    assert config.worker.concurrency == 6
    assert config.worker.poll_interval_s == 1.0


def test_environment_overrides_yaml(config_dir):
    write_yaml(config_dir / "local.yaml", {"database": {"url": "sqlite:///local.db"}})

    config = resolve_config(
        environ={"DATABASE_URL": "postgresql://db/jobs", "WORKER_CONCURRENCY": "8"}
    )
    assert config.database.url == "postgresql://db/jobs"
    assert config.worker.concurrency == 8


def test_cli_overrides_everything(config_dir):
    config = resolve_config({"concurrency": 3, "db": "sqlite:///cli.db"}, environ={"WORKER_CONCURRENCY": "8"})
    assert config.worker.concurrency == 3
    assert config.database.url == "sqlite:///cli.db"


def test_invalid_values_raise(config_dir):
    write_yaml(config_dir / "local.yaml", {"worker": {"concurrency": 0}})
    with pytest.raises(ValidationError):
        resolve_config(environ={})


def test_bucket_selects_s3():
    """Test that a bucket name alone switches the backend to S3."""
    overrides = env_overrides({"S3_BUCKET_NAME": "media", "S3_ENDPOINT": "http://minio:9000"})
    assert overrides["storage"] == {
        "bucket": "media",
        "endpoint_url": "http://minio:9000",
        "backend": "s3",
    }


def test_explicit_backend_wins_over_bucket():
    overrides = env_overrides({"S3_BUCKET_NAME": "media", "PIXELQUEUE_STORAGE": "local"})
    assert overrides["storage"]["backend"] == "local"


def test_empty_env_values_ignored():
    assert env_overrides({"DATABASE_URL": ""}) == {}


def test_merge_dicts_is_recursive():
    base = {"a": {"x": 1, "y": 2}, "b": 1}
    merged = merge_dicts(base, {"a": {"y": 3}, "c": 4})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
    assert base["a"]["y"] == 2


def test_load_yaml_missing_file(tmp_path):
    assert load_yaml(tmp_path / "nope.yaml") == {}


def test_configure_logging():
    configure_logging("DEBUG")
    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert any(h.formatter and h.formatter._fmt == LOG_FORMAT for h in root.handlers)
    assert logging.getLogger("botocore").level == logging.WARNING
    configure_logging("WARNING")
