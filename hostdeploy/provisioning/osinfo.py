"""Operating system detection for picking an installation strategy."""

import logging
import os
import platform
import shlex
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OSInfo:
    id: str
    version: str = ""

    def __str__(self):
        return f"{self.id} {self.version}".strip()


def _parse_key_values(path):
    """Parse a shell-style KEY=value file such as /etc/os-release."""
    values = {}
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            try:
                parts = shlex.split(value)
            except ValueError:
                parts = [value]
            values[key.strip()] = parts[0] if parts else ""
    return values


def _lsb_release_id():
    try:
        result = subprocess.run(["lsb_release", "-si"], capture_output=True, text=True, timeout=10)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0 or not result.stdout.strip():
        return None
    return result.stdout.strip().lower()


def detect_os(root="/") -> OSInfo:
    """Detect the host OS identifier.

    Order: /etc/os-release, ``lsb_release -si``, /etc/lsb-release,
    /etc/debian_version, /etc/redhat-release, then the kernel name.
    ``root`` lets tests point at a fake filesystem.
    """
    etc = os.path.join(root, "etc")

    os_release = os.path.join(etc, "os-release")
    if os.path.isfile(os_release):
        values = _parse_key_values(os_release)
        if values.get("ID"):
            return OSInfo(values["ID"].lower(), values.get("VERSION_ID", ""))

    lsb_id = _lsb_release_id()
    if lsb_id:
        return OSInfo(lsb_id)

    lsb_file = os.path.join(etc, "lsb-release")
    if os.path.isfile(lsb_file):
        values = _parse_key_values(lsb_file)
        if values.get("DISTRIB_ID"):
            return OSInfo(values["DISTRIB_ID"].lower(), values.get("DISTRIB_RELEASE", ""))

    if os.path.isfile(os.path.join(etc, "debian_version")):
        return OSInfo("debian")

    if os.path.isfile(os.path.join(etc, "redhat-release")):
        return OSInfo("rhel")

    return OSInfo(platform.system().lower())
