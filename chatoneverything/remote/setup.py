"""uinput permission probe and one-shot privilege setup for the dotool backend."""

import os
import shlex
import subprocess
import sys
from typing import Optional

from .. import config
from ..logging_config import log
from .daemon import DotoolRunner


PERMISSION_OK = "ok"
PERMISSION_NEED_SETUP = "need-setup"
PERMISSION_NEED_RELOGIN = "need-relogin"

UDEV_RULE = 'KERNEL=="uinput", MODE="0660", GROUP="input", TAG+="uaccess"'


def is_linux() -> bool:
    return sys.platform.startswith("linux")


def permission_state(tool_available: bool, rule_exists: bool, probe_exit_code: Optional[int]) -> str:
    """Classify uinput access from tool availability, rule presence and the probe result.

    A failed probe with the rule already installed means the login session predates
    the rule and must be restarted.
    """
    if not tool_available:
        return PERMISSION_OK
    if probe_exit_code == 0:
        return PERMISSION_OK
    return PERMISSION_NEED_RELOGIN if rule_exists else PERMISSION_NEED_SETUP


def probe_exit_code(runner: DotoolRunner) -> Optional[int]:
    """Run a harmless key press through dotool; None when it could not run."""
    if not runner.dotool_path:
        return None
    try:
        proc = subprocess.run(
            [runner.dotool_path],
            input="key shift\n",
            text=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=config.TOOL_EXEC_TIMEOUT_S,
            check=False,
        )
        return int(proc.returncode)
    except (OSError, subprocess.SubprocessError) as error:
        log.warning("[remote] permission probe failed: %s", error)
        return None


def check_permission(runner: DotoolRunner, rule_path: Optional[str] = None) -> str:
    if not is_linux() or not runner.available:
        return PERMISSION_OK
    path = rule_path or config.UDEV_RULE_PATH
    return permission_state(True, os.path.exists(path), probe_exit_code(runner))


def install_udev_rule(rule_path: Optional[str] = None) -> bool:
    """Install the uinput rule through a single pkexec prompt; a restart is needed afterwards."""
    if not is_linux():
        return False
    path = rule_path or config.UDEV_RULE_PATH
    script = (
        f"printf '%s\\n' {shlex.quote(UDEV_RULE)} > {shlex.quote(path)}"
        " && udevadm control --reload-rules && udevadm trigger"
    )
    try:
        proc = subprocess.run(
            ["pkexec", "sh", "-c", script],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=config.PRIVILEGE_INSTALL_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as error:
        log.error("[remote] failed to install udev rule: %s", error)
        return False
    if int(proc.returncode) != 0:
        log.error("[remote] udev rule install exited with %s", proc.returncode)
        return False
    log.info("[remote] installed udev rule at %s", path)
    return True
