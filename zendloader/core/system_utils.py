import subprocess
import shutil
import shlex
import os
import logging
from typing import List, Tuple, Optional

from . import config
from .errors import PreconditionError

logger = logging.getLogger(__name__)


def run_command(command_list: List[str], timeout: Optional[float] = None) -> Tuple[int, str, str]:
    """Runs a system command and captures output/return code."""
    joined_command = shlex.join(command_list)
    logger.debug(f"SYSTEM_UTILS: Running command: {joined_command}")
    try:
        result = subprocess.run(
            command_list,
            capture_output=True,
            text=True,
            check=False,
            encoding='utf-8',
            errors='replace',
            timeout=timeout
        )
        if result.returncode != 0:
            logger.debug(
                f"SYSTEM_UTILS: Command exited with code {result.returncode}: {joined_command}\n"
                f"  Stdout: {result.stdout.strip()}\n"
                f"  Stderr: {result.stderr.strip()}"
            )
        return result.returncode, result.stdout.strip(), result.stderr.strip()
    except FileNotFoundError:
        msg = f"SYSTEM_UTILS: Command not found: {command_list[0]}"
        logger.error(msg)
        return -1, "", msg
    except subprocess.TimeoutExpired:
        msg = f"SYSTEM_UTILS: Command timed out after {timeout}s: {joined_command}"
        logger.error(msg)
        return -3, "", msg
    except OSError as e:
        msg = f"SYSTEM_UTILS: Error running command '{joined_command}': {e}"
        logger.error(msg, exc_info=True)
        return -2, "", msg


# --- Preconditions ---
def is_running_as_root() -> bool:
    geteuid = getattr(os, 'geteuid', None)
    if geteuid is None:  # Non-POSIX platforms
        return False
    return geteuid() == 0


def find_missing_tools(tools: List[str]) -> List[str]:
    """Returns the subset of `tools` that cannot be found on PATH."""
    missing = [tool for tool in tools if not shutil.which(tool)]
    if missing:
        logger.debug(f"SYSTEM_UTILS: Missing tools on PATH: {missing}")
    return missing


def check_preconditions(require_root: bool = True, required_tools: Optional[List[str]] = None) -> None:
    """
    Fails fast if the run cannot possibly succeed.
    Raises PreconditionError when not root (and root is required) or a tool is missing.
    """
    if require_root and not is_running_as_root():
        raise PreconditionError(
            "This installer must be run as root.",
            suggestion=f"Run it again with 'sudo {config.APP_NAME} ...'"
        )

    tools = config.REQUIRED_TOOLS if required_tools is None else required_tools
    missing = find_missing_tools(tools)
    if missing:
        raise PreconditionError(
            f"{', '.join(missing)} is not installed.",
            suggestion="Install it with your package manager (e.g. 'apt install' or 'yum install')"
        )
    logger.info("SYSTEM_UTILS: Precondition checks passed.")


# --- systemd ---
def is_service_active(service_name: str) -> bool:
    """True when `systemctl is-active --quiet <service>` reports the unit active."""
    ret_code, _, _ = run_command([config.SYSTEMCTL_PATH, "is-active", "--quiet", service_name])
    logger.debug(f"SYSTEM_UTILS: Service '{service_name}' is-active code: {ret_code}")
    return ret_code == 0


def restart_service(service_name: str) -> Tuple[bool, str]:
    """
    Restarts a systemd unit.
    Returns:
        A tuple: (success: bool, message: str)
    """
    logger.info(f"SYSTEM_UTILS: Restarting service '{service_name}'...")
    ret_code, stdout, stderr = run_command([config.SYSTEMCTL_PATH, "restart", service_name])
    if ret_code == 0:
        return True, f"Service '{service_name}' restarted."
    details = stderr or stdout or f"exit code {ret_code}"
    logger.warning(f"SYSTEM_UTILS: Restart of '{service_name}' failed: {details}")
    return False, f"Failed to restart service '{service_name}': {details}"


# --- Processes ---
def kill_processes_by_name(process_name: str) -> bool:
    """
    Sends SIGTERM to every process called `process_name` via killall.
    Returns False when nothing was killed (including "no process found").
    """
    ret_code, _, stderr = run_command([config.KILLALL_PATH, process_name])
    if ret_code == 0:
        logger.info(f"SYSTEM_UTILS: Killed all '{process_name}' processes.")
        return True
    logger.info(f"SYSTEM_UTILS: No '{process_name}' processes killed ({stderr or f'code {ret_code}'}).")
    return False
