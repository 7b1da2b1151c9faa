"""Host provisioning: command execution, OS detection and dependency installation."""

from hostdeploy.provisioning.dependencies import TOOLS, ensure_dependencies
from hostdeploy.provisioning.osinfo import OSInfo, detect_os
from hostdeploy.provisioning.shell import make_run_cmd, make_write_file

__all__ = [
    "TOOLS",
    "ensure_dependencies",
    "OSInfo",
    "detect_os",
    "make_run_cmd",
    "make_write_file",
]
