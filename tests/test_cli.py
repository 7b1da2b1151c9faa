"""CLI tests: dry-run end to end as a subprocess, exit codes in process."""

import logging
import os
import shutil
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from hostdeploy.deploy.types import DeployError
from hostdeploy.hostdeploy import build_parser, main


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    yield
    root.setLevel(saved[0])
    root.handlers[:] = saved[1]


@pytest.fixture
def dry_deploy_dir(tmp_path, project_root):
    path = tmp_path / "deploy"
    (path / "config").mkdir(parents=True)
    shutil.copyfile(os.path.join(project_root, "config", "env.example"), path / "config" / "env.example")
    return path


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.deploy_dir == os.getcwd()
    assert args.env_file is None
    assert not args.dry_run and not args.yes


def test_dry_run_end_to_end(run_cli, dry_deploy_dir):
    rc, stdout, stderr = run_cli("--deploy-dir", str(dry_deploy_dir), "--dry-run", "--yes")
    assert rc == 0, stdout + stderr
    assert "[dry-run] git clone -b main" in stdout
    assert "[dry-run] git clone -b dev" in stdout
    assert "Skipping SSL setup" in stdout
    assert "nginx -t" in stdout
    assert "docker compose up -d" in stdout
    assert "Deployment completed successfully!" in stdout
    assert not (dry_deploy_dir / ".env").exists()
    assert not (dry_deploy_dir / "SchoolBase-FE").exists()


def test_dry_run_missing_template_exits_nonzero(run_cli, dry_deploy_dir):
    with open(dry_deploy_dir / "stack.yaml", "w") as f:
        yaml.dump({"nginx": {"template_dir": "nowhere"}}, f)
    rc, stdout, _ = run_cli("--deploy-dir", str(dry_deploy_dir), "--dry-run", "--yes")
    assert rc == 1
    assert "[ERROR] proxy: Template not found" in stdout
    assert "docker compose up" not in stdout


def test_fatal_error_exits_1(tmp_path, capsys):
    with patch("hostdeploy.hostdeploy.run_deploy", new=AsyncMock(side_effect=DeployError("compose", "boom"))):
        with pytest.raises(SystemExit) as exc:
            main(["--deploy-dir", str(tmp_path)])
    assert exc.value.code == 1
    assert "[ERROR] compose: boom" in capsys.readouterr().out


def test_interrupt_exits_130(tmp_path):
    with patch("hostdeploy.hostdeploy.run_deploy", new=AsyncMock(side_effect=KeyboardInterrupt)):
        with pytest.raises(SystemExit) as exc:
            main(["--deploy-dir", str(tmp_path)])
    assert exc.value.code == 130


def test_yes_skips_confirmation(tmp_path):
    deploy = AsyncMock(return_value=True)
    with patch("hostdeploy.hostdeploy.run_deploy", new=deploy):
        main(["--deploy-dir", str(tmp_path), "--yes", "--dry-run"])
    params = deploy.await_args.args[2]
    assert params.dry_run and params.deploy_dir == str(tmp_path)
    assert deploy.await_args.kwargs["confirm"]() is None
