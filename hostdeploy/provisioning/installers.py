"""Per-OS installation strategies.

One Installer is selected from the detected OS and then asked to make each
missing tool callable. Tools with plain package names go through
``install_packages``; tools that need extra setup (Docker's apt repository,
the standalone compose binary, the Jinja2 module) have an
``install_<key>`` method.
"""

import logging
import os
import platform
import sys
import tempfile

import httpx

from hostdeploy.deploy.types import DeployError

logger = logging.getLogger(__name__)

COMPOSE_RELEASES_API = "https://api.github.com/repos/docker/compose/releases/latest"
COMPOSE_DOWNLOAD_URL = "https://github.com/docker/compose/releases/download/{version}/docker-compose-{system}-{machine}"
COMPOSE_BINARY = "/usr/local/bin/docker-compose"


class Installer:
    """Base installation strategy. Subclasses bind a package manager."""

    name = "base"
    os_ids: tuple[str, ...] = ()

    def __init__(self, os_id, run_cmd, dry_run=False):
        self.os_id = os_id
        self.run_cmd = run_cmd
        self.dry_run = dry_run

    async def _run(self, command, what, timeout=1800):
        rc, _, stderr = await self.run_cmd(command, privileged=True, timeout=timeout, log_output=True)
        if rc != 0:
            raise DeployError("dependencies", f"Failed to install {what}: {stderr.strip() or f'exit code {rc}'}")

    async def install_packages(self, packages, what):
        raise NotImplementedError

    async def enable_service(self, service):
        """Enable and start a service. Best effort."""
        for command in (["systemctl", "enable", service], ["systemctl", "start", service]):
            rc, _, _ = await self.run_cmd(command, privileged=True)
            if rc != 0:
                logger.warning(f"'{' '.join(command)}' failed")

    async def install(self, tool):
        """Make ``tool`` callable using this strategy."""
        custom = getattr(self, f"install_{tool.key}", None)
        if custom is not None:
            await custom(tool)
        else:
            packages = tool.packages.get(self.name)
            if not packages:
                raise DeployError("dependencies", f"No install procedure for {tool.label} on {self.os_id}")
            await self.install_packages(packages, tool.label)
        for service in tool.services:
            await self.enable_service(service)

    async def install_docker(self, tool):
        await self.install_packages(tool.packages[self.name], tool.label)

    async def install_compose(self, tool):
        """Install the standalone docker-compose binary from the latest release."""
        if self.dry_run:
            logger.info(f"[dry-run] download docker-compose -> {COMPOSE_BINARY}")
            return

        system, machine = platform.system(), platform.machine()
        try:
            async with httpx.AsyncClient(follow_redirects=True, timeout=60) as client:
                resp = await client.get(COMPOSE_RELEASES_API)
                resp.raise_for_status()
                version = resp.json()["tag_name"]
                url = COMPOSE_DOWNLOAD_URL.format(version=version, system=system, machine=machine)
                logger.info(f"Downloading docker-compose {version}...")
                resp = await client.get(url, timeout=600)
                resp.raise_for_status()
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise DeployError("dependencies", f"Failed to download docker-compose: {e}") from e

        with tempfile.NamedTemporaryFile(delete=False, suffix="_docker-compose") as f:
            f.write(resp.content)
            tmp_path = f.name
        try:
            await self._run(["install", "-m", "755", tmp_path, COMPOSE_BINARY], "docker-compose")
        finally:
            os.unlink(tmp_path)

    async def install_jinja2(self, tool):
        command = [sys.executable, "-m", "pip", "install", "jinja2"]
        rc, _, _ = await self.run_cmd(command + ["--user"], log_output=True)
        if rc != 0:
            await self._run(command, tool.label)


class AptInstaller(Installer):
    name = "apt"
    os_ids = ("ubuntu", "debian")

    def __init__(self, os_id, run_cmd, dry_run=False):
        super().__init__(os_id, run_cmd, dry_run)
        self._updated = False

    async def _update(self):
        if not self._updated:
            await self._run(["apt-get", "update"], "package index")
            self._updated = True

    async def install_packages(self, packages, what):
        await self._update()
        await self._run(["apt-get", "install", "-y", *packages], what)

    async def install_docker(self, tool):
        # Old distro packages conflict with docker-ce
        await self.run_cmd(
            ["apt-get", "remove", "-y", "docker", "docker-engine", "docker.io", "containerd", "runc"], privileged=True
        )
        await self.install_packages(["ca-certificates", "curl", "gnupg", "lsb-release"], "Docker prerequisites")
        await self._run(["mkdir", "-p", "/etc/apt/keyrings"], "Docker keyring directory")
        await self._run(
            [
                "sh",
                "-c",
                f"curl -fsSL https://download.docker.com/linux/{self.os_id}/gpg"
                " | gpg --dearmor --yes -o /etc/apt/keyrings/docker.gpg",
            ],
            "Docker GPG key",
        )
        await self._run(
            [
                "sh",
                "-c",
                'echo "deb [arch=$(dpkg --print-architecture) signed-by=/etc/apt/keyrings/docker.gpg]'
                f' https://download.docker.com/linux/{self.os_id} $(lsb_release -cs) stable"'
                " > /etc/apt/sources.list.d/docker.list",
            ],
            "Docker apt repository",
        )
        self._updated = False
        await self.install_packages(tool.packages[self.name], tool.label)


class YumInstaller(Installer):
    name = "yum"
    os_ids = ("centos", "rhel", "fedora")

    async def install_packages(self, packages, what):
        await self._run(["yum", "install", "-y", *packages], what)

    async def install_docker(self, tool):
        await self.install_packages(["yum-utils"], "yum-utils")
        await self._run(
            ["yum-config-manager", "--add-repo", "https://download.docker.com/linux/centos/docker-ce.repo"],
            "Docker yum repository",
        )
        await self.install_packages(tool.packages[self.name], tool.label)


class ApkInstaller(Installer):
    name = "apk"
    os_ids = ("alpine",)

    async def install_packages(self, packages, what):
        await self._run(["apk", "add", "--no-cache", *packages], what)

    async def enable_service(self, service):
        rc, _, _ = await self.run_cmd(["rc-update", "add", service, "boot"], privileged=True)
        if rc != 0:
            logger.warning(f"Could not add {service} to the boot runlevel")
        rc, _, _ = await self.run_cmd(["service", service, "start"], privileged=True)
        if rc != 0:
            logger.warning(f"Could not start {service}")


INSTALLERS = (AptInstaller, YumInstaller, ApkInstaller)


def select_installer(os_id, run_cmd, dry_run=False) -> Installer:
    """Pick the installation strategy for an OS identifier."""
    for cls in INSTALLERS:
        if os_id in cls.os_ids:
            return cls(os_id, run_cmd, dry_run=dry_run)
    raise DeployError("dependencies", f"Unsupported OS: {os_id}")
