from __future__ import annotations

import json
import logging

import pytest
import requests

from provisioner.cli import main as cli
from provisioner.core.services import sequence
from provisioner.core.services.readiness import ReadinessProber


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def health_script(monkeypatch, clock, scripted_session):
    """Route every prober the CLI builds to a scripted health endpoint."""

    def install(script, repeat_last=True):
        session = scripted_session(script, repeat_last=repeat_last)

        def factory(*args, **kwargs):
            return ReadinessProber(session, clock=clock, sleep=clock.sleep)

        monkeypatch.setattr(sequence, "ReadinessProber", factory)
        monkeypatch.setattr(cli, "ReadinessProber", factory)
        return session

    return install


@pytest.fixture
def credentials(monkeypatch):
    monkeypatch.setenv("VECTOR_DB_URL", "https://vectors.example.com")
    monkeypatch.setenv("VECTOR_DB_API_KEY", "sk-cli-secret")


def test_start_without_credentials_exits_with_credential_code(context, runner, compose_file, capsys, health_script):
    health_script([{"status": "ready"}])

    code = cli.main(["start"], context=context)

    assert code == 3
    err = capsys.readouterr().err
    assert "VECTOR_DB_URL" in err
    assert not any("up" in call for call in runner.calls)


def test_start_reports_ready(context, compose_file, credentials, capsys, health_script):
    health_script([{"status": "ready", "version": "1.2.0"}])

    code = cli.main(["start", "--rebuild", "--timeout", "30"], context=context)

    assert code == 0
    out = capsys.readouterr().out
    assert "health: ready (version 1.2.0)" in out
    assert "sk-cli-secret" not in out


def test_start_degraded_is_a_warning(context, compose_file, credentials, capsys, health_script):
    health_script([{"status": "degraded"}])

    code = cli.main(["start", "--timeout", "2"], context=context)

    assert code == 0
    captured = capsys.readouterr()
    assert "health: degraded" in captured.out
    assert "warning: service is reachable but not ready" in captured.err


def test_start_unreachable_fails_with_log_hint(context, compose_file, credentials, capsys, health_script):
    health_script([requests.ConnectionError("refused")])

    code = cli.main(["start", "--timeout", "2"], context=context)

    assert code == 1
    err = capsys.readouterr().err
    assert err.startswith("error: ")
    assert "hint: Inspect raw logs with: docker compose -p vector-service logs" in err


def test_status_without_containers_fails(context, capsys, health_script):
    health_script([{"status": "ready"}])

    code = cli.main(["status"], context=context)

    assert code == 1
    assert "no running containers" in capsys.readouterr().err


def test_status_probes_running_service(context, runner, capsys, health_script):
    runner.containers = ["c0ffee01"]
    session = health_script([{"status": "ready", "version": "1.2.0"}])

    code = cli.main(["status"], context=context)

    assert code == 0
    assert len(session.requests) == 1
    assert "health: ready" in capsys.readouterr().out


def test_stop_brings_project_down(context, runner, settings, capsys):
    runner.containers = ["c0ffee01"]

    code = cli.main(["stop"], context=context)

    assert code == 0
    assert runner.containers == []
    assert "stopped project vector-service" in capsys.readouterr().out


def test_restart_requires_existing_configuration(context, capsys):
    code = cli.main(["restart"], context=context)

    assert code == 1
    assert "does not exist" in capsys.readouterr().err


def test_logs_forwards_flags(context, runner, settings):
    code = cli.main(["logs", "--follow", "--tail", "20"], context=context)

    assert code == 0
    assert runner.calls[-1][-4:] == ["logs", "--follow", "--tail", "20"]


def test_unknown_flag_is_a_usage_error(context):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["logs", "--rebuild"], context=context)

    assert excinfo.value.code == 2


def test_log_entries_carry_the_subcommand(context, runner, capsys):
    runner.containers = ["c0ffee01"]

    assert cli.main(["stop"], context=context) == 0

    entries = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
    stopped = next(entry for entry in entries if entry["message"] == "service.stopped")
    assert stopped["command"] == "stop"
    assert stopped["run_id"]
