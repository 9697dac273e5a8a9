# zendloader/managers/service_manager.py

import logging
from typing import List, Optional

from ..core import config
from ..core import system_utils
from ..core.errors import ServiceRestartError

logger = logging.getLogger(__name__)


def find_active_service(service_names: List[str]) -> Optional[str]:
    """Returns the first candidate unit that systemd reports active."""
    for name in service_names:
        if system_utils.is_service_active(name):
            logger.debug(f"SERVICE_MANAGER: Candidate service '{name}' is active.")
            return name
        logger.debug(f"SERVICE_MANAGER: Candidate service '{name}' is not active.")
    return None


def restart_web_service(stack: config.StackDefinition) -> str:
    """
    Restarts the stack's web server so PHP picks up the new php.ini.
    Returns the restarted unit name; raises ServiceRestartError otherwise.
    """
    candidates = stack.service_names
    logger.info(f"SERVICE_MANAGER: Restarting {stack.display_name} service ({' or '.join(candidates)})...")

    service_name = find_active_service(candidates)
    if not service_name:
        raise ServiceRestartError(
            f"Could not find active {stack.display_name} service ({' or '.join(candidates) or 'none configured'})."
        )

    ok, message = system_utils.restart_service(service_name)
    if not ok:
        raise ServiceRestartError(message)
    logger.info(f"SERVICE_MANAGER: {message}")

    if stack.worker_process_name:
        # Long-lived PHP workers keep the old ini until they are replaced
        logger.info(f"SERVICE_MANAGER: Killing all {stack.worker_process_name} processes so new configuration is loaded...")
        if not system_utils.kill_processes_by_name(stack.worker_process_name):
            logger.info(f"SERVICE_MANAGER: No {stack.worker_process_name} processes killed. "
                        f"This is normal if they already restarted.")
    return service_name
