"""Repository synchronizer: clone or update each application source tree."""

import enum
import logging
import os
import shutil

from hostdeploy.config.env import RunSettings, SyncAction
from hostdeploy.deploy.types import DeployError, StepResult, report

logger = logging.getLogger(__name__)


class SyncStatus(enum.Enum):
    CLONED = "cloned"
    UPDATED = "updated"
    UNREACHABLE = "unreachable"  # fetch failed: network or remote problem
    BRANCH_UNAVAILABLE = "branch-unavailable"
    DIVERGED = "diverged"  # fetch worked, fast-forward did not


async def _clone(run_cmd, repo, settings, path):
    logger.info(f"Cloning {repo.name} repository ({settings.branch})...")
    rc, _, stderr = await run_cmd(
        ["git", "clone", "-b", settings.branch, settings.url, path], timeout=1800, log_output=True
    )
    if rc != 0:
        raise DeployError("repositories", f"Failed to clone {settings.url}: {stderr.strip() or f'exit code {rc}'}")
    return SyncStatus.CLONED


async def _update(run_cmd, repo, settings, path):
    logger.info(f"Updating {repo.name} repository...")
    branch = settings.branch

    rc, _, _ = await run_cmd(["git", "fetch", "origin"], cwd=path, timeout=600, log_output=True)
    if rc != 0:
        return SyncStatus.UNREACHABLE

    rc, _, _ = await run_cmd(["git", "checkout", branch], cwd=path)
    if rc != 0:
        rc, _, _ = await run_cmd(["git", "checkout", "-b", branch, f"origin/{branch}"], cwd=path)
        if rc != 0:
            return SyncStatus.BRANCH_UNAVAILABLE

    rc, _, _ = await run_cmd(["git", "pull", "--ff-only", "origin", branch], cwd=path, timeout=600, log_output=True)
    if rc != 0:
        return SyncStatus.DIVERGED
    return SyncStatus.UPDATED


def _result(repo, settings, status):
    if status is SyncStatus.CLONED:
        return StepResult.ok("repositories", f"{repo.name} repository cloned")
    if status is SyncStatus.UPDATED:
        return StepResult.ok("repositories", f"{repo.name} repository updated")
    if status is SyncStatus.UNREACHABLE:
        return StepResult.warning(
            "repositories", f"Could not fetch {repo.name} from {settings.url}; deploying the existing working tree"
        )
    if status is SyncStatus.BRANCH_UNAVAILABLE:
        return StepResult.warning(
            "repositories", f"Branch '{settings.branch}' not available in {repo.name}; staying on current branch"
        )
    return StepResult.warning(
        "repositories", f"{repo.name}: local branch has diverged from origin/{settings.branch}; not pulled"
    )


async def sync_repository(run_cmd, repo, settings, action, base_dir, dry_run=False):
    """Clone or update one repository. Returns a SyncStatus."""
    path = os.path.join(base_dir, repo.directory)

    if os.path.isdir(path) and action is SyncAction.CLONE:
        logger.warning(f"{repo.directory} exists. Removing for fresh clone...")
        if dry_run:
            logger.info(f"[dry-run] rm -rf {path}")
            return await _clone(run_cmd, repo, settings, path)
        shutil.rmtree(path)

    if not os.path.isdir(path):
        return await _clone(run_cmd, repo, settings, path)

    return await _update(run_cmd, repo, settings, path)


async def sync_repositories(run_cmd, stack, run_settings: RunSettings, base_dir, dry_run=False):
    """Synchronize every repository in the stack, then check they all exist."""
    statuses = {}
    for repo in stack.repositories:
        settings = run_settings.repos[repo.name]
        status = await sync_repository(run_cmd, repo, settings, run_settings.action, base_dir, dry_run=dry_run)
        report([_result(repo, settings, status)])
        statuses[repo.name] = status

    if not dry_run:
        missing = [r.directory for r in stack.repositories if not os.path.isdir(os.path.join(base_dir, r.directory))]
        if missing:
            report([StepResult.fatal("repositories", f"Failed to clone/update repositories: {', '.join(missing)}")])
    return statuses
