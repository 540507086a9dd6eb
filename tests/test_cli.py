from unittest.mock import patch

import pytest
import yaml

from vidqueue.cli import main
from vidqueue.models import QueueConfig
from vidqueue.queue import QueueManager, SQLiteJobStore
from vidqueue.security.auth import hash_api_key

from conftest import make_metadata, make_payload


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["vidqueue", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_serve_help():
    """Test serve subcommand help."""
    with patch("sys.argv", ["vidqueue", "serve", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_hash_key(capsys):
    with patch("sys.argv", ["vidqueue", "hash-key", "my-key"]):
        main()
    assert capsys.readouterr().out.strip() == hash_api_key("my-key")


def test_cli_config_masks_secrets(tmp_path, capsys):
    config_file = tmp_path / "service.yaml"
    config_file.write_text(yaml.safe_dump({
        "auth": {"api_keys": ["client-secret"], "admin_key": "admin-secret"},
        "queue": {"max_queue_size": 7},
    }))

    with patch("sys.argv", ["vidqueue", "config", "--config", str(config_file), "--workers", "3"]):
        main()

    out = capsys.readouterr().out
    assert "client-secret" not in out
    assert "admin-secret" not in out
    data = yaml.safe_load(out)
    assert data["queue"]["max_queue_size"] == 7
    assert data["worker"]["concurrency"] == 3


def test_cli_config_invalid_exits(tmp_path, capsys):
    config_file = tmp_path / "bad.yaml"
    config_file.write_text(yaml.safe_dump({"worker": {"concurrency": 0}}))

    with patch("sys.argv", ["vidqueue", "config", "--config", str(config_file)]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_cli_queue_status(temp_db, capsys):
    store = SQLiteJobStore(temp_db)
    queue = QueueManager(store, QueueConfig())
    queue.submit(make_payload(), make_metadata())
    queue.submit(make_payload(), make_metadata())
    queue.dequeue_next()
    store.close()

    with patch("sys.argv", ["vidqueue", "queue", "status", "--db", temp_db]):
        main()

    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "Waiting:" in out
    assert "Total:" in out
    lines = {line.split(":")[0]: line.split()[-1] for line in out.splitlines() if ":" in line}
    assert lines["Waiting"] == "1"
    assert lines["Active"] == "1"
    assert lines["Total"] == "2"


def test_cli_serve_runs_uvicorn(tmp_path):
    config_file = tmp_path / "service.yaml"
    config_file.write_text(yaml.safe_dump({"storage": {"db_path": str(tmp_path / "jobs.db")}}))

    argv = ["vidqueue", "serve", "--config", str(config_file), "--port", "9100", "--host", "127.0.0.1"]
    with patch("sys.argv", argv), patch("uvicorn.run") as run:
        main()

    run.assert_called_once()
    assert run.call_args.kwargs["host"] == "127.0.0.1"
    assert run.call_args.kwargs["port"] == 9100


def test_cli_queue_list_filters_by_state(temp_db, capsys):
    store = SQLiteJobStore(temp_db)
    queue = QueueManager(store, QueueConfig())
    running = queue.submit(make_payload(), make_metadata()).job_id
    waiting = queue.submit(make_payload(), make_metadata()).job_id
    queue.dequeue_next()
    store.close()

    with patch("sys.argv", ["vidqueue", "queue", "list", "--db", temp_db, "--state", "active"]):
        main()

    out = capsys.readouterr().out
    assert running in out
    assert waiting not in out


def test_cli_queue_show_prints_history(temp_db, capsys):
    store = SQLiteJobStore(temp_db)
    queue = QueueManager(store, QueueConfig())
    job_id = queue.submit(make_payload(), make_metadata(), job_id="client-job-7").job_id
    queue.dequeue_next()
    store.close()

    with patch("sys.argv", ["vidqueue", "queue", "show", job_id, "--db", temp_db]):
        main()

    out = capsys.readouterr().out
    assert "job_id: client-job-7" in out
    assert "- -> waiting" in out
    assert "waiting -> active" in out


def test_cli_queue_show_unknown_job(temp_db, capsys):
    with patch("sys.argv", ["vidqueue", "queue", "show", "missing", "--db", temp_db]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 1
    assert "No job found" in capsys.readouterr().err
