import subprocess
import sys
from pathlib import Path

import pytest
import requests

# Ensure the provisioner package is importable when tests run from the repository root.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from provisioner.core import config
from provisioner.core.context import ProvisioningContext
from provisioner.core.exceptions import CommandFailed
from provisioner.core.services.runner import CommandRunner

PACKAGE_EXECUTABLES = {
    "docker.io": ["docker"],
    "docker-compose": ["docker-compose"],
    "ufw": ["ufw"],
    "curl": ["curl"],
    "awscli": ["aws"],
    "htop": ["htop"],
    "wget": ["wget"],
    "jq": ["jq"],
    "ca-certificates": [],
}


class FakeRunner(CommandRunner):
    """Scripted stand-in for the host: package manager, ufw, systemctl and docker compose."""

    def __init__(self, settings):
        super().__init__(settings)
        self.calls = []
        self.envs = []
        self.available = {"apt-get", "dpkg", "systemctl", "docker", "ufw", "curl"}
        self.compose_plugin = True
        self.failing_packages = set()
        self.daemon_active = True
        self.docker_group_members = {"operator"}
        self.ufw_rules = []
        self.ufw_active = False
        self.ufw_failing_rules = set()
        self.containers = []
        self.up_returncode = 0
        self.up_containers = ["c0ffee01", "c0ffee02"]
        self.on_command = None

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.available else None

    def _result(self, argv, returncode=0, stdout="", stderr=""):
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)

    def run(self, argv, *, privileged=False, check=False, capture=True, env=None, timeout=None):
        argv = list(argv)
        self.calls.append(argv)
        self.envs.append(dict(env or {}))
        if self.on_command is not None:
            self.on_command(argv)
        result = self._dispatch(argv)
        if check and result.returncode != 0:
            raise CommandFailed(argv, result.returncode, result.stderr)
        return result

    def _dispatch(self, argv):
        head = argv[0]
        if head not in self.available and head not in {"env", "test", "id", "usermod"}:
            raise CommandFailed(argv, 127, f"{head}: not found")
        if head == "ufw":
            return self._ufw(argv)
        if head == "systemctl":
            return self._systemctl(argv)
        if head == "env" and "apt-get" in argv:
            return self._apt_install(argv[argv.index("install") + 1:])
        if head == "apt-get":
            return self._result(argv)
        if head == "test":
            return self._result(argv)
        if head == "id":
            groups = "operator docker" if argv[-1] in self.docker_group_members else argv[-1]
            return self._result(argv, stdout=f"{groups}\n")
        if head == "usermod":
            self.docker_group_members.add(argv[-1])
            return self._result(argv)
        if argv[:3] == ["docker", "compose", "version"]:
            return self._result(argv, returncode=0 if self.compose_plugin else 1)
        if argv[:2] == ["docker", "compose"] or head == "docker-compose":
            return self._compose(argv)
        return self._result(argv)

    def _apt_install(self, args):
        packages = [arg for arg in args if not arg.startswith("-")]
        failed = [pkg for pkg in packages if pkg in self.failing_packages]
        if failed:
            return self._result(args, returncode=100, stderr=f"E: Unable to locate package {failed[0]}")
        for pkg in packages:
            self.available.update(PACKAGE_EXECUTABLES.get(pkg, []))
        return self._result(args)

    def _systemctl(self, argv):
        if "is-active" in argv:
            return self._result(argv, returncode=0 if self.daemon_active else 3)
        if "enable" in argv:
            self.daemon_active = True
        return self._result(argv)

    def _ufw(self, argv):
        args = argv[1:]
        if args == ["show", "added"]:
            if not self.ufw_rules:
                return self._result(argv, stdout="Added user rules (see 'ufw status' for running firewall):\n(None)\n")
            lines = "".join(f"ufw allow {rule}\n" for rule in self.ufw_rules)
            return self._result(argv, stdout=f"Added user rules (see 'ufw status' for running firewall):\n{lines}")
        if args == ["status"]:
            return self._result(argv, stdout=f"Status: {'active' if self.ufw_active else 'inactive'}\n")
        if args[:1] == ["allow"]:
            if args[1] in self.ufw_failing_rules:
                return self._result(argv, returncode=1, stderr="ERROR: could not add rule")
            self.ufw_rules.append(args[1])
            return self._result(argv, stdout="Rules updated\n")
        if args[:2] == ["delete", "allow"]:
            if args[2] in self.ufw_rules:
                self.ufw_rules.remove(args[2])
            return self._result(argv, stdout="Rule deleted\n")
        if args == ["--force", "enable"]:
            self.ufw_active = True
            return self._result(argv, stdout="Firewall is active and enabled on system startup\n")
        return self._result(argv)

    def _compose(self, argv):
        action = argv[argv.index("-f") + 2:]
        if action[:2] == ["up", "-d"]:
            if self.up_returncode != 0:
                return self._result(argv, returncode=self.up_returncode, stderr="pull access denied\n")
            self.containers = list(self.up_containers)
            return self._result(argv)
        if action == ["ps", "-q"]:
            return self._result(argv, stdout="".join(f"{cid}\n" for cid in self.containers))
        if action == ["ps"]:
            rows = "".join(f"{cid}   running\n" for cid in self.containers)
            return self._result(argv, stdout=f"NAME   STATUS\n{rows}")
        if action == ["down"]:
            self.containers = []
            return self._result(argv)
        return self._result(argv)

    def commands(self, prefix):
        return [call for call in self.calls if call[: len(prefix)] == prefix]


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=None):
        self._payload = payload
        self.status_code = status_code
        self.text = text if text is not None else ""

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class ScriptedSession:
    """HTTP session replaying a script of payloads, responses or exceptions."""

    def __init__(self, script, repeat_last=True):
        self.script = list(script)
        self.repeat_last = repeat_last
        self.requests = []
        self.headers = {}

    def _next(self):
        if len(self.script) > 1 or not self.repeat_last:
            return self.script.pop(0)
        return self.script[0]

    def get(self, url, timeout=None, **kwargs):
        return self.request("GET", url, timeout=timeout, **kwargs)

    def request(self, method, url, timeout=None, **kwargs):
        self.requests.append((method, url, timeout, kwargs))
        outcome = self._next()
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, FakeResponse):
            return outcome
        return FakeResponse(outcome)

    def close(self):
        pass


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("PROVISION_PROJECT_DIR", str(tmp_path))
    monkeypatch.setenv("PROVISION_INTERACTIVE", "false")
    monkeypatch.setenv("PROVISION_USE_SUDO", "never")
    monkeypatch.setenv("PROVISION_PROBE_INTERVAL_S", "1")
    monkeypatch.setenv("SUDO_USER", "operator")
    for key in ("VECTOR_DB_URL", "VECTOR_DB_API_KEY", "DEBUG", "LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)

    config.get_settings.cache_clear()
    settings = config.get_settings()

    yield settings

    config.get_settings.cache_clear()


@pytest.fixture
def settings(_reset_settings):
    return _reset_settings


@pytest.fixture
def runner(settings):
    return FakeRunner(settings)


@pytest.fixture
def context(settings, runner):
    return ProvisioningContext.create(settings, runner=runner)


@pytest.fixture
def compose_file(settings):
    path = settings.compose_path
    path.write_text("services:\n  api:\n    image: example/vector-service:latest\n", encoding="utf-8")
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scripted_session():
    return ScriptedSession


@pytest.fixture
def fake_response():
    return FakeResponse
