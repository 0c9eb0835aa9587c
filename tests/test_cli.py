from unittest.mock import patch

import pytest
import yaml

from pixelqueue.cli import main

from conftest import SCENARIO_SETTINGS, encode_image


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Empty working directory with no config files and a clean environment."""
    monkeypatch.chdir(tmp_path)
    for var in ("DATABASE_URL", "S3_BUCKET_NAME", "PIXELQUEUE_STORAGE", "WORKER_CONCURRENCY"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def run_cli(*args):
    with patch("sys.argv", ["pixelqueue", *args]):
        main()


def common(workdir):
    return ["--db", f"sqlite:///{workdir / 'jobs.db'}", "--storage-root", str(workdir / "blobs")]


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["pixelqueue", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_worker_help():
    with patch("sys.argv", ["pixelqueue", "worker", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_no_command_prints_help(capsys):
    run_cli()
    assert "usage" in capsys.readouterr().out.lower()


def test_cli_check_command(capsys):
    """Test check command lists the encoders."""
    run_cli("check")
    out = capsys.readouterr().out
    assert "jpeg" in out and "webp" in out


def test_cli_check_missing_encoder(capsys):
    """Test check exits 1 when a core encoder is missing."""
    formats = {"jpeg": True, "png": True, "webp": False, "avif": False}
    with patch("pixelqueue.transcoder.supported_formats", return_value=formats):
        with pytest.raises(SystemExit) as exc_info:
            run_cli("check")
    assert exc_info.value.code == 1
    assert "❌ webp" in capsys.readouterr().out


def test_cli_queue_status_empty(workdir, capsys):
    run_cli("queue", "status", *common(workdir))
    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "Pending:" in out


def test_cli_ingest_then_process(workdir, capsys):
    """Ingest an image, drain the queue, then show the file."""
    image = workdir / "cat.jpg"
    image.write_bytes(encode_image())
    settings = workdir / "settings.yaml"
    settings.write_text(yaml.safe_dump(SCENARIO_SETTINGS))

    run_cli("ingest", str(image), "--project-id", "p1", "--project-name", "Shop",
            "--settings", str(settings), *common(workdir))
    out = capsys.readouterr().out
    assert "INGESTED" in out
    file_id = next(
        line.split(":", 1)[1].strip() for line in out.splitlines() if line.startswith("File:")
    )

    run_cli("queue", "process", *common(workdir))
    assert "Completed:" in capsys.readouterr().out

    run_cli("file", file_id, *common(workdir))
    out = capsys.readouterr().out
    assert "ready" in out
    assert f"shop-p1/images/thumb/{file_id}.webp" in out
    assert (workdir / "blobs" / "shop-p1" / "images" / "medium" / f"{file_id}.jpg").exists()


def test_cli_unknown_file_exits_1(workdir, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("file", "missing", *common(workdir))
    assert exc_info.value.code == 1
    assert "Unknown file" in capsys.readouterr().out


def test_cli_invalid_config_exits_2(workdir, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("worker", "--concurrency", "0", *common(workdir))
    assert exc_info.value.code == 2
    assert "Invalid configuration" in capsys.readouterr().out


def test_cli_sweep(workdir, capsys):
    run_cli("sweep", *common(workdir))
    assert "Reset 0 stale job(s)" in capsys.readouterr().out


def test_cli_worker_once(workdir, capsys):
    run_cli("worker", "--once", "--poll-interval", "0.05", *common(workdir))
    assert "WORKER SUMMARY" in capsys.readouterr().out
