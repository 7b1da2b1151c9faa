"""Deployment configuration: process-environment run settings and the .env file.

Configuration is loaded into frozen dataclasses and passed to each stage
explicitly. Nothing is exported into ``os.environ``.
"""

import enum
import logging
import os
import shutil
from dataclasses import dataclass, field

from dotenv import dotenv_values

from hostdeploy.config.stack import Stack
from hostdeploy.deploy.types import DeployError
from hostdeploy.redact import register_secrets

logger = logging.getLogger(__name__)

ENV_FILE = ".env"
ENV_TEMPLATE = os.path.join("config", "env.example")

DEFAULT_SSL_EMAIL = "admin@yourdomain.com"
API_URL_KEY = "NEXT_PUBLIC_API_BASE_URL"
LOCAL_API_URL = "http://localhost:3008/api/v1"

# Pairs that must hold two different values to be secure
SECRET_PAIRS = [
    ("JWT_SECRET", "JWT_REFRESH_SECRET"),
    ("MINIO_ROOT_PASSWORD", "MINIO_SECRET_KEY"),
]


class SyncAction(enum.Enum):
    CLONE = "clone"
    PULL = "pull"


@dataclass(frozen=True)
class RepoSettings:
    url: str
    branch: str


@dataclass(frozen=True)
class RunSettings:
    """Per-run overrides read from the process environment."""

    repos: dict[str, RepoSettings] = field(default_factory=dict)
    action: SyncAction = SyncAction.PULL
    force_rebuild: bool = False


def load_run_settings(stack: Stack, environ=None) -> RunSettings:
    """Resolve repository URLs/branches, sync action and rebuild flag.

    ``<NAME>_REPO`` and ``<NAME>_BRANCH`` override the stack defaults for
    each repository; ``REPO_ACTION`` is ``clone`` or ``pull``.
    """
    environ = os.environ if environ is None else environ

    repos = {}
    for repo in stack.repositories:
        repos[repo.name] = RepoSettings(
            url=environ.get(f"{repo.env_prefix}_REPO") or repo.url,
            branch=environ.get(f"{repo.env_prefix}_BRANCH") or repo.branch,
        )

    raw_action = (environ.get("REPO_ACTION") or SyncAction.PULL.value).strip().lower()
    try:
        action = SyncAction(raw_action)
    except ValueError:
        raise DeployError("settings", f"REPO_ACTION must be 'clone' or 'pull', got '{raw_action}'") from None

    force = (environ.get("FORCE_REBUILD") or "false").strip().lower() == "true"
    return RunSettings(repos=repos, action=action, force_rebuild=force)


@dataclass(frozen=True)
class DeployConfig:
    """Values loaded from the .env file, with defaults applied."""

    values: dict[str, str]
    domains: dict[str, str]
    placeholders: dict[str, str]
    ssl_email: str = DEFAULT_SSL_EMAIL
    api_base_url: str = LOCAL_API_URL

    @property
    def use_ssl(self) -> bool:
        """True only when no site is left on its placeholder domain."""
        return bool(self.domains) and not any(self.is_placeholder(name) for name in self.domains)

    def is_placeholder(self, site_name) -> bool:
        return self.domains[site_name] == self.placeholders[site_name]

    @property
    def all_placeholders(self) -> bool:
        return all(self.is_placeholder(name) for name in self.domains)

    def compose_env(self) -> dict[str, str]:
        """Derived keys the container build needs but the .env file may lack."""
        return {API_URL_KEY: self.api_base_url}


def _confirm_prompt():
    input("Press Enter to continue after reviewing .env, or Ctrl+C to cancel...")


def ensure_env_file(env_path, template_path, confirm=_confirm_prompt):
    """Create the .env file from its template on first run.

    Blocks on ``confirm`` so the operator can edit the new file. A missing
    template is fatal.
    """
    if os.path.isfile(env_path):
        logger.info(f"{env_path} already exists, loading configuration...")
        return False

    if not os.path.isfile(template_path):
        raise DeployError("environment", f"Env template not found: {template_path}")

    logger.info(f"Creating {env_path} from {template_path}...")
    shutil.copyfile(template_path, env_path)
    logger.warning(f"Please edit {env_path} and set your configuration values!")
    logger.warning("Especially important:")
    logger.warning("  - FRONTEND_DOMAIN and BACKEND_DOMAIN (for SSL)")
    logger.warning("  - SSL_EMAIL (for Let's Encrypt)")
    logger.warning("  - JWT_SECRET and JWT_REFRESH_SECRET (security)")
    logger.warning("  - Database passwords (DB_PASS)")
    logger.warning("  - MinIO passwords (MINIO_ROOT_PASSWORD, MINIO_SECRET_KEY)")
    confirm()
    return True


def _derive_api_url(values, backend_domain, backend_placeholder):
    explicit = values.get(API_URL_KEY)
    if explicit:
        return explicit
    if backend_domain is not None and backend_domain != backend_placeholder:
        return f"https://{backend_domain}/api/v1"
    return values.get("NEXT_PUBLIC_API_URL") or LOCAL_API_URL


def _check_secret_pairs(values):
    for first, second in SECRET_PAIRS:
        a, b = values.get(first), values.get(second)
        if a and b and a == b:
            logger.warning(f"{first} and {second} hold the same value; they should differ")


def parse_env(values, stack: Stack) -> DeployConfig:
    """Apply defaults and derived keys to parsed .env values."""
    values = {k: v for k, v in values.items() if v is not None}

    domains = {}
    placeholders = {}
    for site in stack.sites:
        domains[site.name] = values.get(site.domain_key) or site.placeholder
        placeholders[site.name] = site.placeholder

    try:
        backend = stack.site("backend")
        api_url = _derive_api_url(values, domains[backend.name], backend.placeholder)
    except KeyError:
        api_url = _derive_api_url(values, None, None)

    _check_secret_pairs(values)

    return DeployConfig(
        values=values,
        domains=domains,
        placeholders=placeholders,
        ssl_email=values.get("SSL_EMAIL") or DEFAULT_SSL_EMAIL,
        api_base_url=api_url,
    )


def load_env(stack: Stack, env_path, template_path, confirm=_confirm_prompt, dry_run=False) -> DeployConfig:
    """Load the .env file into a DeployConfig, creating it on first run.

    In dry-run mode a missing .env is not created; the template is read in
    its place.
    """
    if dry_run and not os.path.isfile(env_path):
        if not os.path.isfile(template_path):
            raise DeployError("environment", f"Env template not found: {template_path}")
        logger.info(f"[dry-run] cp {template_path} {env_path}")
        env_path = template_path
    else:
        ensure_env_file(env_path, template_path, confirm=confirm)

    logger.info(f"Loading configuration from {env_path}...")
    values = dotenv_values(env_path)
    register_secrets(values)
    return parse_env(values, stack)
