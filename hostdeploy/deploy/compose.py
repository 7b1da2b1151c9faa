"""Docker Compose: command detection, build decision, start-up and service state."""

import asyncio
import enum
import json
import logging
import re
import shutil
from dataclasses import dataclass

from hostdeploy.deploy.types import DeployError, StepResult, report

logger = logging.getLogger(__name__)


class ServiceState(enum.Enum):
    NOT_BUILT = "not-built"
    BUILT_NOT_RUNNING = "built-not-running"
    RUNNING_HEALTHY = "running-healthy"
    RUNNING_UNHEALTHY = "running-unhealthy"


@dataclass(frozen=True)
class ComposeCommand:
    """How to invoke compose on this host."""

    base: tuple[str, ...]  # ("docker", "compose") or ("docker-compose",)
    privileged: bool = False

    def display(self) -> str:
        prefix = "sudo " if self.privileged else ""
        return prefix + " ".join(self.base)

    def argv(self, *args) -> list[str]:
        return [*self.base, *args]


async def detect_compose_base(run_cmd, which=shutil.which):
    """Prefer the ``docker compose`` plugin, fall back to ``docker-compose``."""
    rc, _, _ = await run_cmd(["docker", "compose", "version"])
    if rc == 0:
        return ("docker", "compose")
    if which("docker-compose"):
        return ("docker-compose",)
    raise DeployError("compose", "Docker Compose not found. Please install Docker Compose first.")


async def detect_privilege(run_cmd) -> bool:
    """Return True if the docker daemon is only reachable through sudo."""
    rc, _, _ = await run_cmd(["docker", "ps"])
    if rc == 0:
        return False
    rc, _, _ = await run_cmd(["docker", "ps"], privileged=True)
    if rc == 0:
        logger.warning(
            "Using sudo for Docker commands. Consider logging out and back in after being added to docker group."
        )
        return True
    raise DeployError(
        "compose",
        "Cannot access Docker. Please ensure Docker is installed and running. "
        "If you were just added to the docker group, you may need to logout and login again.",
    )


async def setup_compose(run_cmd, which=shutil.which) -> ComposeCommand:
    base = await detect_compose_base(run_cmd, which=which)
    privileged = await detect_privilege(run_cmd)
    compose = ComposeCommand(base=base, privileged=privileged)
    logger.info(f"Using Docker Compose command: {compose.display()}")
    return compose


_PS_UP = re.compile(r"\bUp\b")


def _state_from_text(status) -> ServiceState:
    lowered = status.lower()
    if _PS_UP.search(status) or lowered.startswith("running"):
        if "unhealthy" in lowered:
            return ServiceState.RUNNING_UNHEALTHY
        return ServiceState.RUNNING_HEALTHY
    return ServiceState.BUILT_NOT_RUNNING


def parse_service_states(ps_output) -> dict[str, ServiceState]:
    """Parse ``compose ps`` output into service name -> ServiceState.

    Understands JSON (one object per line or a single array, from
    ``--format json``) and the plain table of both compose flavors.
    """
    text = ps_output.strip()
    if not text:
        return {}

    states = {}
    if text.startswith("[") or text.startswith("{"):
        try:
            rows = json.loads(text) if text.startswith("[") else [json.loads(line) for line in text.splitlines() if line]
        except json.JSONDecodeError:
            rows = None
        if rows is not None:
            for row in rows:
                name = row.get("Service") or row.get("Name", "")
                state = row.get("State", "")
                health = row.get("Health", "")
                status = row.get("Status", "") or state
                if state == "running":
                    unhealthy = health == "unhealthy" or "unhealthy" in status
                    states[name] = ServiceState.RUNNING_UNHEALTHY if unhealthy else ServiceState.RUNNING_HEALTHY
                else:
                    states[name] = ServiceState.BUILT_NOT_RUNNING
            return states

    for line in text.splitlines():
        line = line.strip()
        # header row, or the dashed rule under the legacy header
        if not line or line.startswith(("NAME", "Name")) or set(line) == {"-"}:
            continue
        name = line.split()[0]
        states[name] = _state_from_text(line)
    return states


def running_services(states) -> list[str]:
    return [
        name
        for name, state in states.items()
        if state in (ServiceState.RUNNING_HEALTHY, ServiceState.RUNNING_UNHEALTHY)
    ]


def service_results(states, compose) -> list[StepResult]:
    """Grade the post-start service states. Nothing running is fatal."""
    running = running_services(states)
    if not running:
        return [StepResult.fatal("compose", f"Some services failed to start. Check logs with: {compose.display()} logs")]
    results = [StepResult.ok("compose", f"Services started successfully: {', '.join(sorted(running))}")]
    for name, state in sorted(states.items()):
        if state is ServiceState.RUNNING_UNHEALTHY:
            results.append(StepResult.warning("compose", f"Service {name} reports unhealthy"))
        elif state is ServiceState.BUILT_NOT_RUNNING:
            results.append(StepResult.warning("compose", f"Service {name} is not running"))
        elif state is ServiceState.NOT_BUILT:
            results.append(StepResult.warning("compose", f"Service {name} has no container"))
    return results


async def images_built(run_cmd, compose, project, cwd=None) -> bool:
    """True if ``compose images`` lists an image for this project."""
    rc, stdout, _ = await run_cmd(compose.argv("images"), privileged=compose.privileged, cwd=cwd)
    return rc == 0 and project in stdout


async def build_and_start(run_cmd, compose, project, env, force_rebuild=False, settle_seconds=10, cwd=None, dry_run=False):
    """Build images if needed, start services, and check something is running.

    Returns service name -> ServiceState after the settle interval.
    """
    if force_rebuild:
        should_rebuild = True
        logger.info("FORCE_REBUILD is set - will rebuild images")
    elif not await images_built(run_cmd, compose, project, cwd=cwd):
        should_rebuild = True
        logger.info("Docker images not found - will build")
    else:
        should_rebuild = False
        logger.info("Docker images exist - skipping build (set FORCE_REBUILD=true to rebuild)")

    if should_rebuild:
        logger.info("Building Docker images (this may take a while)...")
        rc, _, _ = await run_cmd(
            compose.argv("build"), privileged=compose.privileged, env=env, cwd=cwd, timeout=3600, log_output=True
        )
        if rc != 0:
            raise DeployError("compose", f"Image build failed. Check the output above or run: {compose.display()} build")

    logger.info("Starting/updating services...")
    rc, _, _ = await run_cmd(
        compose.argv("up", "-d"), privileged=compose.privileged, env=env, cwd=cwd, timeout=1800, log_output=True
    )
    if rc != 0:
        raise DeployError("compose", f"Failed to start services. Check logs with: {compose.display()} logs")

    logger.info("Waiting for services to be healthy...")
    if not dry_run:
        await asyncio.sleep(settle_seconds)

    states = await service_states(run_cmd, compose, cwd=cwd)
    if not dry_run:
        report(service_results(states, compose))
    return states


async def declared_services(run_cmd, compose, cwd=None) -> list[str]:
    rc, stdout, _ = await run_cmd(compose.argv("config", "--services"), privileged=compose.privileged, cwd=cwd)
    if rc != 0:
        return []
    return [line.strip() for line in stdout.splitlines() if line.strip()]


def _has_container(service, states) -> bool:
    # containers are named <project>-<service>-<n>, or with underscores on v1
    pattern = re.compile(rf"^(?:.+[-_])?{re.escape(service)}(?:[-_]\d+)?$")
    return any(pattern.match(name) for name in states)


async def service_states(run_cmd, compose, cwd=None):
    """Current state of every service; declared services without a container are NOT_BUILT."""
    rc, stdout, _ = await run_cmd(compose.argv("ps"), privileged=compose.privileged, cwd=cwd)
    states = parse_service_states(stdout) if rc == 0 else {}
    for service in await declared_services(run_cmd, compose, cwd=cwd):
        if not _has_container(service, states):
            states[service] = ServiceState.NOT_BUILT
    return states
