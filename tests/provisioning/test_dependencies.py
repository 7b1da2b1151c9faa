"""Tests for hostdeploy.provisioning.dependencies: probe before install."""

import asyncio

import pytest

from hostdeploy.deploy.types import DeployError
from hostdeploy.provisioning.dependencies import TOOLS, ensure_dependencies, probe_tool
from hostdeploy.provisioning.osinfo import OSInfo

UBUNTU = OSInfo("ubuntu", "22.04")

INSTALL_FRAGMENTS = ("apt-get", "yum", "apk", "pip install", "usermod")


def _tool(key):
    return next(t for t in TOOLS if t.key == key)


def test_probe_returns_first_line_of_version(runner):
    runner.on("git", "--version", stdout="git version 2.43.0\n")
    assert asyncio.run(probe_tool(runner, _tool("git"))) == "git version 2.43.0"


def test_probe_reads_stderr_for_nginx(runner):
    runner.on("nginx", "-v", stderr="nginx version: nginx/1.24.0\n")
    assert asyncio.run(probe_tool(runner, _tool("nginx"))) == "nginx version: nginx/1.24.0"


def test_probe_falls_back_to_legacy_compose(runner):
    runner.on("docker", "compose", rc=1)
    runner.on("docker-compose", stdout="docker-compose version 1.29.2")
    assert asyncio.run(probe_tool(runner, _tool("compose"))) == "docker-compose version 1.29.2"


def test_probe_missing_tool(runner):
    runner.on("certbot", rc=127)
    assert asyncio.run(probe_tool(runner, _tool("certbot"))) is None


def test_all_present_installs_nothing(runner):
    installed = asyncio.run(ensure_dependencies(runner, os_info=UBUNTU))
    assert installed == []
    assert not any(runner.ran(fragment) for fragment in INSTALL_FRAGMENTS)


def test_rerun_is_a_no_op(runner):
    asyncio.run(ensure_dependencies(runner, os_info=UBUNTU))
    first = list(runner.lines)
    asyncio.run(ensure_dependencies(runner, os_info=UBUNTU))
    assert runner.lines[len(first):] == first


def test_missing_tool_is_installed_then_reprobed(runner):
    runner.on("nginx", "-v", result=[(127, "", ""), (0, "", "nginx version: nginx/1.24.0")])
    installed = asyncio.run(ensure_dependencies(runner, os_info=UBUNTU))
    assert installed == ["nginx"]
    assert runner.ran("apt-get install -y nginx")
    assert runner.count("apt-get update") == 1
    assert runner.ran("systemctl enable nginx")
    assert runner.count("nginx -v") == 2
    assert not runner.ran("apt-get install -y git")


def test_os_detected_only_when_something_is_missing(runner, monkeypatch):
    def boom():
        raise AssertionError("detect_os should not be called")

    monkeypatch.setattr("hostdeploy.provisioning.dependencies.detect_os", boom)
    asyncio.run(ensure_dependencies(runner))


def test_still_missing_after_install_is_fatal(runner):
    runner.on("certbot", rc=127)
    with pytest.raises(DeployError) as exc:
        asyncio.run(ensure_dependencies(runner, os_info=UBUNTU))
    assert exc.value.step == "dependencies"
    assert "Certbot" in str(exc.value)


def test_failed_install_is_fatal(runner):
    runner.on("git", rc=127)
    runner.on("apt-get", "install", rc=100, stderr="E: Unable to locate package git")
    with pytest.raises(DeployError) as exc:
        asyncio.run(ensure_dependencies(runner, os_info=UBUNTU))
    assert "Unable to locate package" in str(exc.value)


def test_unsupported_os_is_fatal(runner):
    runner.on("git", rc=127)
    with pytest.raises(DeployError) as exc:
        asyncio.run(ensure_dependencies(runner, os_info=OSInfo("plan9")))
    assert "Unsupported OS: plan9" in str(exc.value)


def test_unsupported_os_ignored_when_nothing_missing(runner):
    assert asyncio.run(ensure_dependencies(runner, os_info=OSInfo("plan9"))) == []


def test_dry_run_does_not_fail_on_reprobe(runner):
    runner.on("certbot", rc=127)
    installed = asyncio.run(ensure_dependencies(runner, os_info=UBUNTU, dry_run=True))
    assert installed == ["certbot"]


def test_docker_install_adds_user_to_group(runner, monkeypatch):
    monkeypatch.setattr("hostdeploy.provisioning.dependencies.os.geteuid", lambda: 1000)
    monkeypatch.setenv("USER", "deploy")
    runner.on("docker", "--version", result=[(127, "", ""), (0, "Docker version 27.0.1", "")])
    asyncio.run(ensure_dependencies(runner, os_info=UBUNTU))
    assert runner.ran("usermod -aG docker deploy")
    assert runner.ran("apt-get install -y docker-ce")
