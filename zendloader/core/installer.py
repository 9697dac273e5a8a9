import logging
from typing import List, Optional

import requests

from . import config
from . import system_utils
from ..managers import archive_manager
from ..managers import php_manager
from ..managers import service_manager

logger = logging.getLogger(__name__)


class InstallReport:
    """Outcome of one run: every VersionTarget plus the restarted service."""

    def __init__(self, targets: List[php_manager.VersionTarget], restarted_service: Optional[str]):
        self.targets = targets
        self.restarted_service = restarted_service

    @property
    def applied(self) -> List[str]:
        return [t.version for t in self.targets if t.state == php_manager.STATE_APPLIED]

    @property
    def skipped(self) -> List[str]:
        return [t.version for t in self.targets if t.state == php_manager.STATE_SKIPPED]

    def get(self, version: str) -> Optional[php_manager.VersionTarget]:
        for target in self.targets:
            if target.version == version:
                return target
        return None


def run_install(installer_config: config.InstallerConfig,
                session: Optional[requests.Session] = None) -> InstallReport:
    """
    Installs the loader for every configured PHP version and restarts the web
    service. Raises a FatalInstallError subclass for anything that aborts the
    run; per-version resolution problems only skip that version.
    """
    stack = installer_config.stack_definition
    logger.info(f"INSTALLER: Installing loader for PHP {', '.join(installer_config.versions)} on {stack.display_name}.")

    system_utils.check_preconditions(
        require_root=installer_config.require_root,
        required_tools=installer_config.required_tools
    )

    targets: List[php_manager.VersionTarget] = []
    with archive_manager.scoped_temp_dir(installer_config.temp_parent_dir) as work_dir:
        manifest = archive_manager.prepare_artifacts(installer_config, work_dir, session=session)
        for version in installer_config.versions:
            targets.append(php_manager.process_version(version, stack, manifest))

    restarted = service_manager.restart_web_service(stack)

    summary = php_manager.summarize_targets(targets)
    logger.info(f"INSTALLER: Loader installation complete. Applied: {summary[php_manager.STATE_APPLIED] or 'none'}; "
                f"skipped: {summary[php_manager.STATE_SKIPPED] or 'none'}.")
    logger.info("INSTALLER: Verify by creating a file with <?php phpinfo(); ?> in your web root "
                "and checking for 'ionCube Loader' in the output for each PHP version.")
    return InstallReport(targets, restarted)
