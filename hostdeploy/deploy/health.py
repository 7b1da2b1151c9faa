"""HTTP helpers: service health probes and public IP discovery."""

import asyncio
import ipaddress
import logging
import socket

import httpx

logger = logging.getLogger(__name__)

PUBLIC_IP_SERVICES = ("https://ifconfig.me/ip", "https://icanhazip.com")
HEALTH_TIMEOUT = 10


async def probe_http(url, timeout=HEALTH_TIMEOUT) -> bool:
    """GET ``url``; True on any status below 400, False otherwise or on error."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url)
    except httpx.HTTPError as e:
        logger.debug(f"Health probe {url} failed: {e}")
        return False
    return resp.status_code < 400


async def discover_public_ip(services=PUBLIC_IP_SERVICES, timeout=10):
    """Return this host's public IP as seen from the internet, or None."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        for url in services:
            try:
                resp = await client.get(url)
                resp.raise_for_status()
                candidate = resp.text.strip()
                ipaddress.ip_address(candidate)
                return candidate
            except (httpx.HTTPError, ValueError):
                continue
    return None


async def resolve_domain(domain, family=socket.AF_INET):
    """Return the addresses of one family a domain resolves to (empty on failure)."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(domain, None, family=family, type=socket.SOCK_STREAM)
    except OSError:
        return []
    return sorted({info[4][0] for info in infos})
