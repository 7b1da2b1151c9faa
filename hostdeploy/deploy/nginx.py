"""Proxy configurator: render, install, validate and reload nginx site configs."""

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime

from jinja2 import Environment, FileSystemLoader, TemplateError

from hostdeploy.deploy.certs import cert_paths, nginx_is_active
from hostdeploy.deploy.types import DeployError

logger = logging.getLogger(__name__)


def template_context(config, stack) -> dict:
    """Build the parameters shared by every site template.

    Each site contributes ``<name>_domain`` and ``<name>_port``; when SSL is
    on, also ``<name>_ssl_cert`` and ``<name>_ssl_key``.
    """
    use_ssl = config.use_ssl
    context = {"use_ssl": use_ssl, "project": stack.project}
    for site in stack.sites:
        domain = config.domains[site.name]
        context[f"{site.name}_domain"] = domain
        context[f"{site.name}_port"] = site.port
        if use_ssl:
            cert, key = cert_paths(stack.letsencrypt_dir, domain)
        else:
            cert, key = None, None
        context[f"{site.name}_ssl_cert"] = cert
        context[f"{site.name}_ssl_key"] = key
    return context


def render_site_configs(config, stack, output_dir) -> dict[str, str]:
    """Render every site template into ``output_dir``.

    All templates are checked before anything is rendered, so a missing one
    leaves no partial output. Returns site name -> rendered file path.
    """
    missing = [
        os.path.join(stack.template_dir, site.template)
        for site in stack.sites
        if not os.path.isfile(os.path.join(stack.template_dir, site.template))
    ]
    if missing:
        raise DeployError("proxy", f"Template not found: {', '.join(missing)}")

    env = Environment(loader=FileSystemLoader(stack.template_dir), keep_trailing_newline=True)
    context = template_context(config, stack)

    rendered = {}
    for site in stack.sites:
        logger.info(f"Generating {site.name} Nginx configuration...")
        try:
            content = env.get_template(site.template).render(**context)
        except TemplateError as e:
            raise DeployError("proxy", f"Failed to render {site.template}: {e}") from e
        path = os.path.join(output_dir, f"{site.config_name}.conf")
        with open(path, "w") as f:
            f.write(content)
        rendered[site.name] = path
    return rendered


@dataclass
class _Installed:
    """What installing one site changed, so it can be undone."""

    available: str
    enabled: str
    backup: str | None
    had_link: bool


async def _run_checked(run_cmd, command):
    rc, _, stderr = await run_cmd(command, privileged=True)
    if rc != 0:
        raise DeployError("proxy", f"'{' '.join(command)}' failed: {stderr.strip()}")


async def install_site_configs(run_cmd, stack, rendered, timestamp=None):
    """Back up, copy and enable rendered site configs.

    Returns (installed records, whether the default site link was removed).
    A failed copy or link rolls back the sites already installed.
    """
    logger.info("Installing Nginx configurations...")
    timestamp = timestamp or datetime.now().strftime("%Y%m%d_%H%M%S")
    installed = []
    removed_default = False

    try:
        for site in stack.sites:
            available = os.path.join(stack.sites_available, site.config_name)
            enabled = os.path.join(stack.sites_enabled, site.config_name)
            backup = None
            if os.path.exists(available):
                backup = f"{available}.backup.{timestamp}"
                logger.info(f"Backing up existing {site.name} configuration...")
                await _run_checked(run_cmd, ["cp", available, backup])
            had_link = os.path.lexists(enabled)

            installed.append(_Installed(available, enabled, backup, had_link))
            await _run_checked(run_cmd, ["cp", rendered[site.name], available])
            await _run_checked(run_cmd, ["ln", "-sf", available, enabled])

        default_link = os.path.join(stack.sites_enabled, "default")
        if os.path.islink(default_link):
            logger.info("Removing default Nginx site...")
            await _run_checked(run_cmd, ["rm", default_link])
            removed_default = True
    except DeployError:
        await rollback_site_configs(run_cmd, stack, installed, removed_default)
        raise

    logger.info("Nginx configurations installed")
    return installed, removed_default


async def rollback_site_configs(run_cmd, stack, installed, removed_default):
    """Restore the live nginx configuration as it was before install."""
    logger.warning("Rolling back Nginx configuration...")
    for record in installed:
        if record.backup:
            await run_cmd(["cp", record.backup, record.available], privileged=True)
        else:
            await run_cmd(["rm", "-f", record.available], privileged=True)
        if not record.had_link:
            await run_cmd(["rm", "-f", record.enabled], privileged=True)
    if removed_default:
        default_available = os.path.join(stack.sites_available, "default")
        await run_cmd(["ln", "-sf", default_available, os.path.join(stack.sites_enabled, "default")], privileged=True)


async def validate_and_reload(run_cmd):
    """Run ``nginx -t``; reload (or start and enable) nginx if it passes."""
    logger.info("Testing Nginx configuration...")
    rc, _, stderr = await run_cmd(["nginx", "-t"], privileged=True)
    if rc != 0:
        for line in stderr.strip().splitlines():
            logger.error(line)
        return False
    logger.info("Nginx configuration test passed")

    if await nginx_is_active(run_cmd):
        logger.info("Reloading Nginx...")
        await _run_checked(run_cmd, ["systemctl", "reload", "nginx"])
        logger.info("Nginx reloaded successfully")
    else:
        logger.info("Starting Nginx...")
        await _run_checked(run_cmd, ["systemctl", "start", "nginx"])
        await _run_checked(run_cmd, ["systemctl", "enable", "nginx"])
        logger.info("Nginx started successfully")
    return True


async def configure_proxy(run_cmd, config, stack, staging_dir=None):
    """Render, install and activate the nginx site configs.

    On validation failure the previous live configuration is restored and the
    freshly rendered files are left in ``staging_dir`` for inspection.
    """
    staging_dir = staging_dir or tempfile.mkdtemp(prefix=f"{stack.project}-nginx-")
    rendered = render_site_configs(config, stack, staging_dir)

    installed, removed_default = await install_site_configs(run_cmd, stack, rendered)

    if not await validate_and_reload(run_cmd):
        await rollback_site_configs(run_cmd, stack, installed, removed_default)
        raise DeployError(
            "proxy",
            f"Nginx configuration test failed; previous configuration restored. "
            f"Generated files: {', '.join(rendered.values())}",
        )

    if config.use_ssl:
        logger.info("Your application should be accessible at:")
        for site in stack.sites:
            logger.info(f"  {site.name}: https://{config.domains[site.name]}{site.public_path}")
    else:
        logger.info("Using default domains. Set the *_DOMAIN keys in .env to enable SSL.")
    return rendered
