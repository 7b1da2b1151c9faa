"""Deploy orchestration: the fixed sequence of provisioning steps."""

import logging
import os
from dataclasses import dataclass, field

from hostdeploy.config.env import ENV_FILE, ENV_TEMPLATE, load_env, load_run_settings
from hostdeploy.config.stack import load_stack
from hostdeploy.deploy.certs import setup_certificates
from hostdeploy.deploy.compose import build_and_start, setup_compose
from hostdeploy.deploy.health import probe_http
from hostdeploy.deploy.nginx import configure_proxy
from hostdeploy.deploy.repos import sync_repositories
from hostdeploy.deploy.types import StepResult, report
from hostdeploy.provisioning.dependencies import ensure_dependencies

logger = logging.getLogger(__name__)


@dataclass
class DeployParams:
    """Everything a single deploy run needs besides the host callables."""

    deploy_dir: str
    env_file: str | None = None
    env_template: str | None = None
    dry_run: bool = False
    environ: dict = field(default_factory=lambda: dict(os.environ))
    skip_dns_check: bool = False

    @property
    def env_path(self) -> str:
        return self.env_file or os.path.join(self.deploy_dir, ENV_FILE)

    @property
    def template_path(self) -> str:
        return self.env_template or os.path.join(self.deploy_dir, ENV_TEMPLATE)


def _banner(title):
    logger.info("=" * 42)
    logger.info(title)
    logger.info("=" * 42)


async def run_health_checks(stack, dry_run=False):
    """Probe each site's local HTTP endpoint. Failures only warn."""
    results = []
    for site in stack.sites:
        url = f"http://localhost:{site.port}{site.health_path}"
        if dry_run:
            logger.info(f"[dry-run] GET {url}")
            continue
        if await probe_http(url):
            results.append(StepResult.ok("health", f"{site.name} health check passed"))
        else:
            results.append(StepResult.warning("health", f"{site.name} health check failed (may still be starting up)"))
    return report(results)


def print_summary(config, stack, compose):
    _banner("Deployment completed successfully!")
    logger.info("Access your application:")
    for site in stack.sites:
        if config.use_ssl:
            logger.info(f"  {site.name}: https://{config.domains[site.name]}{site.public_path}")
        else:
            logger.info(f"  {site.name}: http://localhost:{site.port}{site.public_path}")
    logger.info("Useful commands:")
    logger.info(f"  View logs:     {compose.display()} logs -f")
    logger.info(f"  Stop services: {compose.display()} down")
    logger.info(f"  Restart:       {compose.display()} restart")


async def run_deploy(run_cmd, write_file, params: DeployParams, confirm=None, os_info=None):
    """Run the full deployment sequence.

    Args:
        run_cmd: async callable(command, privileged=False, ...) -> (returncode, stdout, stderr)
        write_file: async callable(path, content, mode="644") -> bool
        params: DeployParams
        confirm: callable blocking until the operator has reviewed a new .env
        os_info: detected OSInfo override (tests)

    Raises DeployError on any fatal step.
    """
    stack = load_stack(params.deploy_dir)
    run_settings = load_run_settings(stack, params.environ)

    _banner("Deployment")
    for repo in stack.repositories:
        settings = run_settings.repos[repo.name]
        logger.info(f"{repo.name}: {settings.url} (branch: {settings.branch})")
    logger.info(f"Action: {run_settings.action.value}")
    logger.info("Note: Domain and email configuration will be loaded from .env file")

    logger.info("Step 1: Checking system dependencies...")
    await ensure_dependencies(run_cmd, os_info=os_info, dry_run=params.dry_run)

    logger.info("Step 2: Managing repositories...")
    await sync_repositories(run_cmd, stack, run_settings, params.deploy_dir, dry_run=params.dry_run)

    logger.info("Step 3: Setting up environment configuration...")
    env_kwargs = {"confirm": confirm} if confirm is not None else {}
    config = load_env(stack, params.env_path, params.template_path, dry_run=params.dry_run, **env_kwargs)

    if config.use_ssl:
        logger.info("Step 4: Setting up SSL certificates...")
        await setup_certificates(
            run_cmd, write_file, config, stack, dry_run=params.dry_run, check_dns=not params.skip_dns_check
        )
    else:
        logger.warning("Step 4: Skipping SSL setup (using default domain placeholders)")
        logger.warning("         To enable SSL, set the *_DOMAIN keys in the .env file")

    logger.info("Step 5: Configuring Nginx...")
    await configure_proxy(run_cmd, config, stack)

    logger.info("Step 6: Setting up Docker Compose...")
    compose = await setup_compose(run_cmd)

    logger.info("Step 7: Building and starting services...")
    await build_and_start(
        run_cmd,
        compose,
        stack.project,
        env=config.compose_env(),
        force_rebuild=run_settings.force_rebuild,
        settle_seconds=stack.settle_seconds,
        cwd=params.deploy_dir,
        dry_run=params.dry_run,
    )

    logger.info("Step 8: Running health checks...")
    await run_health_checks(stack, dry_run=params.dry_run)

    print_summary(config, stack, compose)
    return True
