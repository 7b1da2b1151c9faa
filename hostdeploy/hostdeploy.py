#!/usr/bin/env python3
"""Single-host deployment tool: CLI entrypoint."""

import argparse
import asyncio
import logging
import os
import sys

from hostdeploy.deploy.orchestrate import DeployParams, run_deploy
from hostdeploy.deploy.types import DeployError
from hostdeploy.logging_setup import setup_cli_logging
from hostdeploy.provisioning.shell import make_run_cmd, make_write_file

logger = logging.getLogger(__name__)


def handle_deploy(args):
    """Handle the deploy run. Exits non-zero on any fatal step."""
    deploy_dir = os.path.abspath(args.deploy_dir)
    params = DeployParams(
        deploy_dir=deploy_dir,
        env_file=args.env_file,
        dry_run=args.dry_run,
        skip_dns_check=args.skip_dns_check,
    )

    run_cmd = make_run_cmd(deploy_dir, dry_run=args.dry_run)
    write_file = make_write_file(run_cmd, dry_run=args.dry_run)
    confirm = (lambda: None) if args.yes else None

    try:
        asyncio.run(run_deploy(run_cmd, write_file, params, confirm=confirm))
    except DeployError as e:
        logger.error(str(e))
        sys.exit(1)
    except (KeyboardInterrupt, EOFError):
        logger.error("Deployment cancelled")
        sys.exit(130)


def build_parser():
    parser = argparse.ArgumentParser(description="Idempotent single-host deployment: repos, TLS, nginx, compose")
    parser.add_argument(
        "--deploy-dir",
        default=os.getcwd(),
        help="Deployment directory holding .env, config/ and the cloned repos (default: cwd)",
    )
    parser.add_argument("--env-file", default=None, help="Path to the env file (default: <deploy-dir>/.env)")
    parser.add_argument("--dry-run", action="store_true", help="Print commands without executing")
    parser.add_argument("--yes", action="store_true", help="Do not wait for confirmation after creating .env")
    parser.add_argument("--skip-dns-check", action="store_true", help="Skip the domain -> public IP check")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.set_defaults(func=handle_deploy)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_cli_logging(verbose=args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
