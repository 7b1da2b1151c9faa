"""Stack manifest: which repositories to sync and which sites to serve.

Built-in defaults describe the two-repository, two-site layout. An optional
``stack.yaml`` in the deploy directory is deep-merged over them, so a
deployment can rename directories, change ports or add sites without code
changes.
"""

import copy
import os
from dataclasses import dataclass
from importlib import resources

import yaml

STACK_FILE = "stack.yaml"

DEFAULT_STACK = {
    "project": "schoolbase",
    "letsencrypt_dir": "/etc/letsencrypt",
    "nginx": {
        "template_dir": None,  # None = templates bundled with the package
        "sites_available": "/etc/nginx/sites-available",
        "sites_enabled": "/etc/nginx/sites-enabled",
    },
    "settle_seconds": 10,
    "repositories": {
        "frontend": {
            "directory": "SchoolBase-FE",
            "url": "https://github.com/schoolbaseafrica/SchoolBase-FE.git",
            "branch": "main",
        },
        "backend": {
            "directory": "SchoolBase-BE",
            "url": "https://github.com/Donkross360/SchoolBase-BE.git",
            "branch": "dev",
        },
    },
    "sites": {
        "frontend": {
            "placeholder": "yourdomain.com",
            "port": 3000,
            "health_path": "/",
            "public_path": "",
        },
        "backend": {
            "placeholder": "api.yourdomain.com",
            "port": 3008,
            "health_path": "/health",
            "public_path": "/api/v1",
        },
    },
}


def deep_merge(base, override):
    """Recursive dict merge. Override wins for scalars."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


@dataclass(frozen=True)
class RepositorySpec:
    """One application source tree."""

    name: str
    directory: str
    url: str
    branch: str

    @property
    def env_prefix(self) -> str:
        return self.name.upper().replace("-", "_")


@dataclass(frozen=True)
class SiteSpec:
    """One public site served through the reverse proxy."""

    name: str
    placeholder: str
    port: int
    health_path: str = "/"
    public_path: str = ""
    template: str = ""
    config_name: str = ""

    @property
    def domain_key(self) -> str:
        """Env file key holding this site's domain, e.g. FRONTEND_DOMAIN."""
        return f"{self.name.upper().replace('-', '_')}_DOMAIN"


@dataclass(frozen=True)
class Stack:
    project: str
    repositories: tuple[RepositorySpec, ...]
    sites: tuple[SiteSpec, ...]
    letsencrypt_dir: str = "/etc/letsencrypt"
    template_dir: str = ""
    sites_available: str = "/etc/nginx/sites-available"
    sites_enabled: str = "/etc/nginx/sites-enabled"
    settle_seconds: float = 10

    @classmethod
    def from_dict(cls, d):
        project = d["project"]
        repos = tuple(
            RepositorySpec(name=name, directory=r["directory"], url=r["url"], branch=str(r["branch"]))
            for name, r in d["repositories"].items()
        )
        sites = tuple(
            SiteSpec(
                name=name,
                placeholder=s["placeholder"],
                port=int(s["port"]),
                health_path=s.get("health_path", "/"),
                public_path=s.get("public_path", ""),
                template=s.get("template") or f"{name}.conf.j2",
                config_name=s.get("config_name") or f"{project}-{name}",
            )
            for name, s in d["sites"].items()
        )
        nginx = d.get("nginx", {})
        return cls(
            project=project,
            repositories=repos,
            sites=sites,
            letsencrypt_dir=d.get("letsencrypt_dir", "/etc/letsencrypt"),
            template_dir=nginx.get("template_dir") or bundled_template_dir(),
            sites_available=nginx.get("sites_available", "/etc/nginx/sites-available"),
            sites_enabled=nginx.get("sites_enabled", "/etc/nginx/sites-enabled"),
            settle_seconds=float(d.get("settle_seconds", 10)),
        )

    def site(self, name):
        for site in self.sites:
            if site.name == name:
                return site
        raise KeyError(name)


def bundled_template_dir() -> str:
    """Directory of the nginx templates shipped with the package."""
    return str(resources.files("hostdeploy") / "templates" / "nginx")


def load_stack(deploy_dir, overrides=None) -> Stack:
    """Load the stack manifest for a deploy directory.

    Reads ``stack.yaml`` if present and deep-merges it (and then
    ``overrides``) over DEFAULT_STACK.
    """
    config = copy.deepcopy(DEFAULT_STACK)
    stack_path = os.path.join(deploy_dir, STACK_FILE)
    if os.path.isfile(stack_path):
        with open(stack_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{stack_path}: expected a mapping at top level")
        config = deep_merge(config, loaded)
    if overrides:
        config = deep_merge(config, overrides)

    template_dir = config.get("nginx", {}).get("template_dir")
    if template_dir and not os.path.isabs(template_dir):
        config["nginx"]["template_dir"] = os.path.join(deploy_dir, template_dir)

    return Stack.from_dict(config)
