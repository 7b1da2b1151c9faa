"""Deployment configuration: stack manifest, run settings and the .env file."""

from hostdeploy.config.env import DeployConfig, RunSettings, SyncAction, load_env, load_run_settings
from hostdeploy.config.stack import Stack, deep_merge, load_stack

__all__ = [
    "DeployConfig",
    "RunSettings",
    "SyncAction",
    "load_env",
    "load_run_settings",
    "Stack",
    "deep_merge",
    "load_stack",
]
