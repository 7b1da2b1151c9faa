"""Shared pytest fixtures for all test modules."""

import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from hostdeploy.config.env import parse_env
from hostdeploy.config.stack import load_stack


PROJECT_ROOT = os.path.normpath(os.path.join(os.path.dirname(__file__), ".."))
ENV_TEMPLATE = os.path.join(PROJECT_ROOT, "config", "env.example")


@pytest.fixture(scope="session")
def project_root():
    """Absolute path to the project root directory."""
    return PROJECT_ROOT


@pytest.fixture(scope="session")
def run_cli(project_root):
    """Return a callable that invokes the hostdeploy CLI as a subprocess."""

    def _run(*args, env=None):
        result = subprocess.run(
            [sys.executable, "-m", "hostdeploy.hostdeploy", *args],
            capture_output=True,
            text=True,
            cwd=project_root,
            env=env,
        )
        return result.returncode, result.stdout, result.stderr

    return _run


# ── Fake host ───────────────────────────────────────────────────────


@dataclass
class Call:
    command: list
    privileged: bool = False
    cwd: str | None = None
    input: str | None = None
    env: dict | None = None

    @property
    def line(self):
        return " ".join(self.command)


@dataclass
class FakeRunner:
    """Recording stand-in for run_cmd.

    Responses are matched by command prefix, most recently added first.
    A response is a (rc, stdout, stderr) tuple, a list of tuples consumed in
    order (the last one repeats), or a callable taking the command.
    """

    default: tuple = (0, "", "")
    calls: list = field(default_factory=list)
    _rules: list = field(default_factory=list)

    def on(self, *prefix, rc=0, stdout="", stderr="", result=None):
        self._rules.insert(0, (tuple(prefix), result if result is not None else (rc, stdout, stderr)))
        return self

    async def __call__(self, command, privileged=False, timeout=600, log_output=False, cwd=None, input=None, env=None):
        command = list(command)
        self.calls.append(Call(command, privileged=privileged, cwd=cwd, input=input, env=env))
        for prefix, response in self._rules:
            if tuple(command[: len(prefix)]) == prefix:
                if callable(response):
                    return response(command)
                if isinstance(response, list):
                    return response.pop(0) if len(response) > 1 else response[0]
                return response
        return self.default

    @property
    def lines(self):
        return [c.line for c in self.calls]

    def ran(self, fragment):
        return any(fragment in line for line in self.lines)

    def count(self, fragment):
        return sum(1 for line in self.lines if fragment in line)


@dataclass
class FakeWriter:
    """Recording stand-in for write_file."""

    ok: bool = True
    files: dict = field(default_factory=dict)

    async def __call__(self, path, content, mode="644", privileged=True):
        self.files[path] = content
        return self.ok


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def writer():
    return FakeWriter()


@pytest.fixture
def clone_creates_dir():
    """FakeRunner response for ``git clone``: materialize the target dir."""

    def _clone(command):
        os.makedirs(command[-1], exist_ok=True)
        return 0, "", ""

    return _clone


# ── Stack and configuration ─────────────────────────────────────────


@pytest.fixture
def deploy_dir(tmp_path):
    """A deploy directory holding the env template."""
    path = tmp_path / "deploy"
    (path / "config").mkdir(parents=True)
    shutil.copyfile(ENV_TEMPLATE, path / "config" / "env.example")
    return path


@pytest.fixture
def host_dirs(tmp_path):
    """Fake /etc/nginx and /etc/letsencrypt trees."""
    dirs = {
        "sites_available": tmp_path / "nginx" / "sites-available",
        "sites_enabled": tmp_path / "nginx" / "sites-enabled",
        "letsencrypt": tmp_path / "letsencrypt",
    }
    for d in dirs.values():
        d.mkdir(parents=True)
    return dirs


@pytest.fixture
def stack_overrides(host_dirs):
    return {
        "letsencrypt_dir": str(host_dirs["letsencrypt"]),
        "settle_seconds": 0,
        "nginx": {
            "sites_available": str(host_dirs["sites_available"]),
            "sites_enabled": str(host_dirs["sites_enabled"]),
        },
    }


@pytest.fixture
def stack(deploy_dir, stack_overrides):
    return load_stack(str(deploy_dir), stack_overrides)


@pytest.fixture
def write_stack_file(deploy_dir, stack_overrides):
    """Write stack.yaml so that a full run picks up the fake host dirs."""

    def _write(extra=None):
        data = dict(stack_overrides)
        if extra:
            data.update(extra)
        with open(deploy_dir / "stack.yaml", "w") as f:
            yaml.dump(data, f)

    return _write


@pytest.fixture
def make_config(stack):
    """Return a factory building a DeployConfig from .env-style values."""

    def _make(**values):
        return parse_env(values, stack)

    return _make


@pytest.fixture
def ssl_config(make_config):
    return make_config(FRONTEND_DOMAIN="school.example.com", BACKEND_DOMAIN="api.school.example.com")


# ── Certificates ────────────────────────────────────────────────────


def make_cert_pem(domain, days_valid, now=None):
    """Self-signed certificate for ``domain`` expiring ``days_valid`` days from now."""
    now = now or datetime.now(timezone.utc)
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=60))
        .not_valid_after(now + timedelta(days=days_valid))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture
def cert_pem():
    return make_cert_pem


@pytest.fixture
def install_cert(host_dirs):
    """Return a helper placing a live certificate for a domain."""

    def _install(domain, days_valid):
        live = host_dirs["letsencrypt"] / "live" / domain
        live.mkdir(parents=True, exist_ok=True)
        (live / "fullchain.pem").write_bytes(make_cert_pem(domain, days_valid))
        (live / "privkey.pem").write_text("key")
        return live / "fullchain.pem"

    return _install
