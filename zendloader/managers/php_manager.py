# zendloader/managers/php_manager.py

import os
import shutil
import logging
from pathlib import Path
from typing import Dict, Optional

from ..core import config
from ..core import system_utils
from ..core.errors import ArtifactCopyError

logger = logging.getLogger(__name__)

# VersionTarget states
STATE_UNRESOLVED = "unresolved"
STATE_RESOLVED = "resolved"
STATE_APPLIED = "applied"
STATE_SKIPPED = "skipped"


class VersionTarget:
    """Per-run resolution state for one PHP version. Never persisted."""

    def __init__(self, version: str):
        self.version = version
        self.config_file: Optional[Path] = None
        self.extension_dir: Optional[Path] = None
        self.loader_artifact: Optional[Path] = None
        self.installed_path: Optional[Path] = None
        self.directive_added = False
        self.state = STATE_UNRESOLVED
        self.skip_reason: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return all([self.config_file, self.extension_dir, self.loader_artifact])

    def mark_resolved(self):
        if not self.is_resolved:
            raise ValueError(f"PHP {self.version}: cannot mark resolved, paths missing.")
        self.state = STATE_RESOLVED

    def mark_skipped(self, reason: str):
        self.state = STATE_SKIPPED
        self.skip_reason = reason

    def __repr__(self):
        return f"VersionTarget(version={self.version!r}, state={self.state!r})"


# --- phpinfo Scraping ---
class PhpInfoProbe:
    """
    Runs `<php binary> -i` once and scrapes labeled values out of the output.
    A value is the last whitespace-delimited token on the first matching line.
    """

    def __init__(self, php_binary: Path):
        self.php_binary = Path(php_binary)
        self._output: Optional[str] = None

    def _get_output(self) -> str:
        if self._output is None:
            if not self.php_binary.is_file():
                logger.debug(f"PHP_MANAGER: PHP binary {self.php_binary} not found; nothing to probe.")
                self._output = ""
            else:
                ret_code, stdout, _ = system_utils.run_command([str(self.php_binary), config.PHP_INFO_FLAG])
                if ret_code != 0:
                    logger.debug(f"PHP_MANAGER: '{self.php_binary} {config.PHP_INFO_FLAG}' exited with code {ret_code}.")
                self._output = stdout or ""
        return self._output

    def get_value(self, label: str) -> Optional[str]:
        for line in self._get_output().splitlines():
            if label in line:
                tokens = line.split()
                value = tokens[-1] if tokens else ""
                if not value or value == config.PHPINFO_NONE_VALUE:
                    return None
                return value
        return None

    def config_file_path(self) -> Optional[Path]:
        value = self.get_value(config.PHPINFO_CONFIG_FILE_LABEL)
        return Path(value) if value else None

    def extension_dir(self) -> Optional[Path]:
        value = self.get_value(config.PHPINFO_EXTENSION_DIR_LABEL)
        return Path(value) if value else None


# --- Runtime Introspectors ---
class RuntimeIntrospector:
    """Finds where a PHP runtime reads its php.ini and loads extensions from."""

    def __init__(self, version: str, stack: config.StackDefinition):
        self.version = version
        self.stack = stack
        php_binary = stack.get_php_binary(version)
        self.probe = PhpInfoProbe(php_binary) if php_binary else None

    def config_file_path(self) -> Optional[Path]:
        raise NotImplementedError

    def extension_dir(self) -> Optional[Path]:
        raise NotImplementedError

    def is_available(self) -> bool:
        return True


class ApacheIntrospector(RuntimeIntrospector):
    """
    Distribution PHP packages: the apache2 SAPI ini, then the FPM ini, then
    whatever the versioned CLI binary reports.
    """

    def config_file_path(self) -> Optional[Path]:
        for candidate in self.stack.get_config_file_candidates(self.version):
            if candidate.is_file():
                return candidate
        if self.probe:
            probed = self.probe.config_file_path()
            if probed:
                logger.debug(f"PHP_MANAGER: No SAPI php.ini for PHP {self.version}; probe reported {probed}.")
            return probed
        return None

    def extension_dir(self) -> Optional[Path]:
        return self.probe.extension_dir() if self.probe else None


class LiteSpeedIntrospector(RuntimeIntrospector):
    """OpenLiteSpeed lsphp builds: everything comes from the lsphp binary itself."""

    def is_available(self) -> bool:
        return bool(self.probe) and self.probe.php_binary.is_file()

    def config_file_path(self) -> Optional[Path]:
        for candidate in self.stack.get_config_file_candidates(self.version):
            if candidate.is_file():
                return candidate
        return self.probe.config_file_path() if self.probe else None

    def extension_dir(self) -> Optional[Path]:
        return self.probe.extension_dir() if self.probe else None


INTROSPECTORS = {
    "apache": ApacheIntrospector,
    "openlitespeed": LiteSpeedIntrospector,
}


def get_introspector(version: str, stack: config.StackDefinition) -> RuntimeIntrospector:
    introspector_cls = INTROSPECTORS.get(stack.stack_id, ApacheIntrospector)
    return introspector_cls(version, stack)


# --- Resolution ---
def resolve_version_target(target: VersionTarget, introspector: RuntimeIntrospector, manifest) -> VersionTarget:
    """
    Fills in the three paths for `target`. On the first one that cannot be
    found the target is marked skipped and returned untouched otherwise.
    """
    version = target.version

    if not introspector.is_available():
        binary = introspector.probe.php_binary if introspector.probe else None
        logger.info(f"PHP_MANAGER: {introspector.stack.display_name} PHP {version} binary not found at {binary}. Skipping this version.")
        target.mark_skipped("php binary not found")
        return target

    config_file = introspector.config_file_path()
    if not config_file or not config_file.is_file():
        logger.info(f"PHP_MANAGER: Could not find a suitable php.ini for PHP {version}. Skipping this version.")
        target.mark_skipped("php.ini not found")
        return target
    target.config_file = config_file
    logger.info(f"PHP_MANAGER: Found php.ini for PHP {version} at: {config_file}")

    extension_dir = introspector.extension_dir()
    if not extension_dir:
        logger.info(f"PHP_MANAGER: Could not find extension_dir for PHP {version}. Skipping.")
        target.mark_skipped("extension_dir not found")
        return target
    target.extension_dir = extension_dir
    logger.info(f"PHP_MANAGER: Found extension_dir for PHP {version} at: {extension_dir}")

    artifact = manifest.artifact_path(version)
    if not artifact:
        logger.info(f"PHP_MANAGER: Loader file {manifest.artifact_filename(version)} for PHP {version} "
                    f"not found in {manifest.root_dir}. Skipping this version.")
        target.mark_skipped("loader artifact not found")
        return target
    target.loader_artifact = artifact

    target.mark_resolved()
    return target


# --- Mutation ---
def install_loader(artifact: Path, extension_dir: Path) -> Path:
    """Copies the loader into the extension dir. Raises ArtifactCopyError on failure."""
    dest_path = Path(extension_dir) / artifact.name
    logger.info(f"PHP_MANAGER: Copying {artifact.name} to {extension_dir}...")
    try:
        shutil.copy2(artifact, dest_path)
        os.chmod(dest_path, 0o644)
    except OSError as e:
        raise ArtifactCopyError(f"Failed to copy {artifact.name} to {extension_dir}: {e}") from e
    return dest_path


def build_load_directive(installed_path: Path) -> str:
    return config.LOAD_DIRECTIVE_TEMPLATE.format(path=installed_path)


def ensure_load_directive(ini_path: Path, directive: str) -> bool:
    """
    Appends `directive` to the ini file unless an identical line exists.
    Returns True if the file was changed.
    """
    content = ini_path.read_text(encoding='utf-8', errors='replace')
    # Whole-line, byte-exact match: an indented or commented copy does not count
    if directive in content.splitlines():
        logger.info(f"PHP_MANAGER: zend_extension line already exists in {ini_path}. Skipping configuration for this version.")
        return False
    with open(ini_path, 'a', encoding='utf-8') as f:
        if content and not content.endswith('\n'):
            f.write('\n')
        f.write(f"{directive}\n")
    logger.info(f"PHP_MANAGER: Added zend_extension line to {ini_path}.")
    return True


def apply_version_target(target: VersionTarget) -> VersionTarget:
    """Copies the loader and patches php.ini for a resolved target."""
    if target.state != STATE_RESOLVED:
        raise ValueError(f"PHP {target.version} is not resolved (state: {target.state}).")

    target.installed_path = install_loader(target.loader_artifact, target.extension_dir)

    logger.info(f"PHP_MANAGER: Configuring php.ini for PHP {target.version}...")
    directive = build_load_directive(target.installed_path)
    try:
        target.directive_added = ensure_load_directive(target.config_file, directive)
    except OSError as e:
        # Treated like any other unresolved path: logged, run continues
        logger.warning(f"PHP_MANAGER: Could not update {target.config_file} for PHP {target.version}: {e}")
        target.mark_skipped("php.ini not writable")
        return target
    target.state = STATE_APPLIED
    return target


def process_version(version: str, stack: config.StackDefinition, manifest) -> VersionTarget:
    """Runs one version through resolve -> apply. Only copy failures raise."""
    logger.info(f"PHP_MANAGER: --- Processing PHP {version} ---")
    target = VersionTarget(version)
    resolve_version_target(target, get_introspector(version, stack), manifest)
    if target.state == STATE_RESOLVED:
        apply_version_target(target)
    return target


def summarize_targets(targets) -> Dict[str, list]:
    summary: Dict[str, list] = {STATE_APPLIED: [], STATE_SKIPPED: []}
    for target in targets:
        summary.setdefault(target.state, []).append(target.version)
    return summary
