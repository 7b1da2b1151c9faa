"""Dependency prober: make sure every host tool the deploy needs is callable.

Each tool is probed with a version query first. Only missing tools trigger
installation, so re-running on a provisioned host issues no install
commands.
"""

import logging
import os
import sys
from dataclasses import dataclass, field

from hostdeploy.deploy.types import DeployError, StepResult, report
from hostdeploy.provisioning.installers import select_installer
from hostdeploy.provisioning.osinfo import detect_os

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tool:
    """A host tool: how to probe it and what to install per strategy."""

    key: str
    label: str
    # Alternative probe commands; the tool is present if any succeeds
    probes: tuple[tuple[str, ...], ...]
    packages: dict[str, list[str]] = field(default_factory=dict)
    services: tuple[str, ...] = ()


TOOLS = (
    Tool(
        key="git",
        label="Git",
        probes=(("git", "--version"),),
        packages={"apt": ["git"], "yum": ["git"], "apk": ["git"]},
    ),
    Tool(
        key="docker",
        label="Docker",
        probes=(("docker", "--version"),),
        packages={
            "apt": ["docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin"],
            "yum": ["docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin"],
            "apk": ["docker", "docker-compose"],
        },
        services=("docker",),
    ),
    Tool(
        key="compose",
        label="Docker Compose",
        probes=(("docker", "compose", "version"), ("docker-compose", "--version")),
    ),
    Tool(
        key="nginx",
        label="Nginx",
        probes=(("nginx", "-v"),),
        packages={"apt": ["nginx"], "yum": ["nginx"], "apk": ["nginx"]},
        services=("nginx",),
    ),
    Tool(
        key="certbot",
        label="Certbot",
        probes=(("certbot", "--version"),),
        packages={
            "apt": ["certbot", "python3-certbot-nginx"],
            "yum": ["certbot", "python3-certbot-nginx"],
            "apk": ["certbot", "certbot-nginx"],
        },
    ),
    Tool(
        key="jinja2",
        label="Jinja2",
        probes=((sys.executable, "-c", "import jinja2; print('Jinja2', jinja2.__version__)"),),
    ),
)


async def probe_tool(run_cmd, tool):
    """Return the version string of an installed tool, or None if missing."""
    for probe in tool.probes:
        rc, stdout, stderr = await run_cmd(list(probe), timeout=60)
        if rc == 0:
            # nginx -v prints to stderr
            text = (stdout.strip() or stderr.strip()).splitlines()
            return text[0] if text else tool.label
    return None


async def _add_user_to_docker_group(run_cmd):
    if os.geteuid() == 0:
        return StepResult.skipped("dependencies")
    user = os.environ.get("USER") or os.environ.get("LOGNAME")
    if not user:
        return StepResult.warning("dependencies", "Could not determine current user for the docker group")
    logger.info("Adding current user to docker group (logout/login required for non-sudo usage)")
    rc, _, _ = await run_cmd(["usermod", "-aG", "docker", user], privileged=True)
    if rc != 0:
        return StepResult.warning("dependencies", f"Could not add {user} to the docker group")
    return StepResult.ok("dependencies")


async def ensure_dependencies(run_cmd, tools=TOOLS, os_info=None, dry_run=False):
    """Probe each tool and install the missing ones.

    The installation strategy is selected lazily, once, the first time a
    tool is missing. Returns the list of tool keys that were installed.
    """
    installer = None
    installed = []

    for tool in tools:
        version = await probe_tool(run_cmd, tool)
        if version is not None:
            logger.info(f"{tool.label} is already installed: {version}")
            continue

        if installer is None:
            os_info = os_info or detect_os()
            logger.info(f"Detected OS: {os_info}")
            installer = select_installer(os_info.id, run_cmd, dry_run=dry_run)

        logger.info(f"Installing {tool.label}...")
        await installer.install(tool)

        version = await probe_tool(run_cmd, tool)
        if version is None and not dry_run:
            raise DeployError("dependencies", f"{tool.label} is still not callable after installation")
        logger.info(f"{tool.label} installed: {version}")
        installed.append(tool.key)

        if tool.key == "docker":
            report([await _add_user_to_docker_group(run_cmd)])

    if installed:
        logger.info(f"Installed: {', '.join(installed)}")
    else:
        logger.info("All dependencies already installed")
    return installed
