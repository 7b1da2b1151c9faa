"""Certificate provisioner: issue, renew or skip Let's Encrypt certificates.

Per domain the decision is driven by the certificate file on disk:

- absent                  -> issue (standalone HTTP-01 challenge on port 80)
- expires in < 30 days    -> ``certbot renew`` once, failure only warns
- valid for >= 30 days    -> skip

Standalone issuance needs port 80, so a running nginx is stopped first and
always started again afterwards, whatever the issuance outcome.
"""

import asyncio
import enum
import ipaddress
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509

from hostdeploy.deploy.health import discover_public_ip, resolve_domain
from hostdeploy.deploy.types import DeployError, StepResult, report

logger = logging.getLogger(__name__)

RENEW_WINDOW = timedelta(days=30)
NGINX_SETTLE_SECONDS = 2

RENEW_HOOK_PATH = "/usr/local/bin/certbot-renew-hook.sh"
SYSTEMD_DIR = "/etc/systemd/system"

RENEW_HOOK = """#!/bin/bash
# Reload Nginx after certificate renewal
systemctl reload nginx
"""

RENEWAL_SERVICE = """[Unit]
Description=Certbot Renewal
After=network.target

[Service]
Type=oneshot
ExecStart=/usr/bin/certbot renew --quiet --deploy-hook {hook}
"""

RENEWAL_TIMER = """[Unit]
Description=Run certbot renewal twice daily
After=network.target

[Timer]
OnCalendar=0/12:00:00
RandomizedDelaySec=3600
Persistent=true

[Install]
WantedBy=timers.target
"""

RENEWAL_CRON = "0 0,12 * * * /usr/bin/certbot renew --quiet --deploy-hook {hook}"


class CertAction(enum.Enum):
    ISSUE = "issue"
    RENEW = "renew"
    SKIP = "skip"


@dataclass(frozen=True)
class CertificateRecord:
    domain: str
    path: str
    exists: bool
    remaining: timedelta | None = None

    @property
    def action(self) -> CertAction:
        if not self.exists:
            return CertAction.ISSUE
        if self.remaining is None or self.remaining < RENEW_WINDOW:
            return CertAction.RENEW
        return CertAction.SKIP


def cert_paths(letsencrypt_dir, domain):
    """Return (fullchain, privkey) paths for a domain's live certificate."""
    live = os.path.join(letsencrypt_dir, "live", domain)
    return os.path.join(live, "fullchain.pem"), os.path.join(live, "privkey.pem")


def certificate_expiry(pem_bytes) -> datetime:
    cert = x509.load_pem_x509_certificate(pem_bytes)
    return cert.not_valid_after_utc


async def _cert_present(run_cmd, path) -> bool:
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    except PermissionError:
        # live/ is root-only on most hosts
        rc, _, _ = await run_cmd(["test", "-f", path], privileged=True)
        return rc == 0
    return True


async def _read_cert(run_cmd, path):
    try:
        with open(path, "rb") as f:
            return f.read()
    except PermissionError:
        rc, stdout, _ = await run_cmd(["cat", path], privileged=True)
        return stdout.encode() if rc == 0 else None


async def inspect_certificate(run_cmd, letsencrypt_dir, domain, now=None) -> CertificateRecord:
    """Probe the filesystem for a domain's certificate and its remaining validity."""
    path, _ = cert_paths(letsencrypt_dir, domain)
    if not await _cert_present(run_cmd, path):
        return CertificateRecord(domain, path, exists=False)

    pem = await _read_cert(run_cmd, path)
    if not pem:
        logger.warning(f"Could not read certificate {path}")
        return CertificateRecord(domain, path, exists=True)
    try:
        expiry = certificate_expiry(pem)
    except ValueError as e:
        logger.warning(f"Could not parse certificate {path}: {e}")
        return CertificateRecord(domain, path, exists=True)

    now = now or datetime.now(timezone.utc)
    return CertificateRecord(domain, path, exists=True, remaining=expiry - now)


async def check_domain_dns(domain, public_ip=None) -> StepResult:
    """Compare a domain's A or AAAA records with this host's public IP. Never fatal."""
    logger.info(f"Checking if {domain} points to this server...")
    if public_ip is None:
        return StepResult.warning("certificates", "Could not determine public IP. Skipping domain verification.")

    ip = ipaddress.ip_address(public_ip)
    addresses = await resolve_domain(domain, family=socket.AF_INET6 if ip.version == 6 else socket.AF_INET)
    if not addresses:
        return StepResult.warning(
            "certificates",
            f"Could not resolve {domain}. SSL certificate generation may fail if it doesn't point to this server.",
        )
    if ip not in {ipaddress.ip_address(a) for a in addresses}:
        return StepResult.warning(
            "certificates",
            f"Domain {domain} ({', '.join(addresses)}) does not point to this server ({public_ip}). "
            "SSL certificate generation may fail.",
        )
    return StepResult.ok("certificates", f"Domain {domain} correctly points to this server")


async def nginx_is_active(run_cmd) -> bool:
    rc, _, _ = await run_cmd(["systemctl", "is-active", "--quiet", "nginx"])
    return rc == 0


async def _stop_nginx(run_cmd, dry_run=False):
    logger.info("Nginx is running. Temporarily stopping it for certificate generation...")
    rc, _, stderr = await run_cmd(["systemctl", "stop", "nginx"], privileged=True)
    if rc != 0:
        raise DeployError("certificates", f"Could not stop nginx: {stderr.strip()}")
    if not dry_run:
        await asyncio.sleep(NGINX_SETTLE_SECONDS)
    logger.info("Nginx stopped temporarily")


async def _restart_nginx(run_cmd, dry_run=False):
    logger.info("Restarting Nginx...")
    await run_cmd(["systemctl", "start", "nginx"], privileged=True)
    if not dry_run:
        await asyncio.sleep(NGINX_SETTLE_SECONDS)
    if await nginx_is_active(run_cmd):
        logger.info("Nginx restarted successfully")
    else:
        logger.warning("Nginx failed to restart. You may need to start it manually.")


async def issue_certificate(run_cmd, domain, email, dry_run=False):
    """Request a new certificate, suspending nginx around the challenge."""
    logger.info(f"Generating SSL certificate for {domain}...")
    nginx_was_running = await nginx_is_active(run_cmd)
    if nginx_was_running:
        await _stop_nginx(run_cmd, dry_run=dry_run)

    try:
        rc, _, _ = await run_cmd(
            [
                "certbot", "certonly",
                "--standalone",
                "--non-interactive",
                "--agree-tos",
                "--email", email,
                "-d", domain,
                "--preferred-challenges", "http",
            ],
            privileged=True,
            timeout=600,
            log_output=True,
        )
    finally:
        if nginx_was_running:
            await _restart_nginx(run_cmd, dry_run=dry_run)

    if rc != 0:
        logger.error("Make sure:")
        logger.error(f"  1. Domain {domain} points to this server's IP")
        logger.error("  2. Port 80 is accessible from the internet")
        logger.error("  3. No firewall is blocking port 80")
        logger.error("  4. No other service is using port 80")
        raise DeployError("certificates", f"Failed to generate certificate for {domain}")
    logger.info(f"SSL certificate generated for {domain}")


async def renew_certificate(run_cmd, domain) -> StepResult:
    rc, _, _ = await run_cmd(["certbot", "renew", "--cert-name", domain, "--quiet"], privileged=True, timeout=600)
    if rc != 0:
        return StepResult.warning("certificates", f"Renewal of {domain} failed; the current certificate stays in place")
    return StepResult.ok("certificates", f"Certificate for {domain} renewed")


async def provision_certificate(run_cmd, letsencrypt_dir, domain, email, dry_run=False) -> CertAction:
    """Issue, renew or skip the certificate for one domain."""
    record = await inspect_certificate(run_cmd, letsencrypt_dir, domain)
    action = record.action

    if action is CertAction.SKIP:
        logger.info(f"Certificate for {domain} is valid for more than {RENEW_WINDOW.days} days")
    elif action is CertAction.RENEW:
        logger.warning(f"Certificate for {domain} expires soon, renewing...")
        report([await renew_certificate(run_cmd, domain)])
    else:
        await issue_certificate(run_cmd, domain, email, dry_run=dry_run)
    return action


async def _install_cron(run_cmd, hook):
    rc, current, _ = await run_cmd(["crontab", "-l"])
    lines = [line for line in current.splitlines() if "certbot" not in line] if rc == 0 else []
    lines.append(RENEWAL_CRON.format(hook=hook))
    rc, _, stderr = await run_cmd(["crontab", "-"], input="\n".join(lines) + "\n")
    if rc != 0:
        return StepResult.warning("certificates", f"Could not install renewal cron job: {stderr.strip()}")
    return StepResult.ok("certificates", "Auto-renewal cron job added (runs twice daily)")


async def install_auto_renewal(run_cmd, write_file, systemd_dir=SYSTEMD_DIR, hook_path=RENEW_HOOK_PATH):
    """Register the periodic ``certbot renew`` job. Overwrites any previous one."""
    logger.info("Setting up SSL certificate auto-renewal...")
    if not await write_file(hook_path, RENEW_HOOK, mode="755"):
        return StepResult.warning("certificates", f"Could not write renewal hook {hook_path}")

    if not os.path.isdir(systemd_dir):
        return await _install_cron(run_cmd, hook_path)

    service_ok = await write_file(
        os.path.join(systemd_dir, "certbot-renewal.service"), RENEWAL_SERVICE.format(hook=hook_path)
    )
    timer_ok = await write_file(os.path.join(systemd_dir, "certbot-renewal.timer"), RENEWAL_TIMER)
    if not (service_ok and timer_ok):
        return StepResult.warning("certificates", "Could not write certbot renewal units")

    for command in (
        ["systemctl", "daemon-reload"],
        ["systemctl", "enable", "certbot-renewal.timer"],
        ["systemctl", "start", "certbot-renewal.timer"],
    ):
        rc, _, _ = await run_cmd(command, privileged=True)
        if rc != 0:
            return StepResult.warning("certificates", f"'{' '.join(command)}' failed; auto-renewal not active")
    return StepResult.ok("certificates", "Auto-renewal timer enabled (checks twice daily)")


async def setup_certificates(
    run_cmd, write_file, config, stack, dry_run=False, systemd_dir=SYSTEMD_DIR, check_dns=True
):
    """Provision certificates for every configured domain.

    Returns a dict of domain -> CertAction, empty when skipped.
    """
    if config.all_placeholders:
        logger.warning("Using default domain placeholders. SSL setup will be skipped.")
        return {}

    rc, _, _ = await run_cmd(["certbot", "--version"])
    if rc != 0:
        raise DeployError("certificates", "Certbot is not installed")

    domains = [config.domains[site.name] for site in stack.sites if not config.is_placeholder(site.name)]

    if check_dns and not dry_run:
        public_ip = await discover_public_ip()
        report([await check_domain_dns(domain, public_ip) for domain in domains])

    actions = {}
    for domain in domains:
        actions[domain] = await provision_certificate(
            run_cmd, stack.letsencrypt_dir, domain, config.ssl_email, dry_run=dry_run
        )

    report([await install_auto_renewal(run_cmd, write_file, systemd_dir=systemd_dir)])

    logger.info("Certificates are stored in:")
    for domain in domains:
        logger.info(f"  {os.path.join(stack.letsencrypt_dir, 'live', domain)}/")
    return actions
