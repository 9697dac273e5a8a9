import os
import json
import copy
import logging
from pathlib import Path
from typing import List, Optional, Dict, Any

logger = logging.getLogger(__name__)

# --- Base Directories ---
CONFIG_DIR = Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config')) / 'zendloader'
DEFAULT_CONFIG_FILE = CONFIG_DIR / 'config.json'

# --- Loader Download ---
DEFAULT_PHP_VERSIONS = ["7.4", "8.0", "8.1", "8.2", "8.3", "8.4"]
IONCUBE_DOWNLOAD_URL = "https://downloads.ioncube.com/loader_downloads/ioncube_loaders_lin_x86-64.tar.gz"
ARCHIVE_FILENAME = "ioncube_loaders_lin_x86-64.tar.gz"
ARCHIVE_SUBDIR = "ioncube"  # Directory inside the tarball holding the loaders
LOADER_PREFIX = "ioncube_loader"
LOADER_PLATFORM = "lin"
LOADER_EXTENSION = "so"
TEMP_DIR_PREFIX = "zendloader_"
DOWNLOAD_TIMEOUT = 60  # Seconds, applies to connect and each read
DOWNLOAD_CHUNK_SIZE = 64 * 1024

# --- PHP Introspection ---
PHP_INFO_FLAG = "-i"
PHPINFO_CONFIG_FILE_LABEL = "Loaded Configuration File"
PHPINFO_EXTENSION_DIR_LABEL = "extension_dir =>"
PHPINFO_NONE_VALUE = "(none)"
LOAD_DIRECTIVE_TEMPLATE = 'zend_extension="{path}"'

# --- System Interaction Paths ---
SYSTEMCTL_PATH = "systemctl"
KILLALL_PATH = "killall"
REQUIRED_TOOLS = [SYSTEMCTL_PATH]


# --- Value Checks ---
def _is_str(value) -> bool:
    return isinstance(value, str)


def _is_optional_str(value) -> bool:
    return value is None or isinstance(value, str)


def _is_str_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def _is_bool(value) -> bool:
    return isinstance(value, bool)


def _is_number(value) -> bool:
    # bool is an int subclass, "download_timeout": true is still a mistake
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_dict(value) -> bool:
    return isinstance(value, dict)


def _check_value(key: str, value, check, expected: str, context: str):
    if not check(value):
        raise ValueError(f"{context} '{key}' must be {expected}, got {type(value).__name__}: {value!r}")


# --- StackDefinition Class ---
class StackDefinition:
    """
    Describes how PHP runtimes are laid out on one web-server stack and which
    systemd units serve it. Path templates take {version} ("8.2") and
    {version_nodot} ("82") placeholders.
    """

    # Attributes a config file may replace via "stack_overrides"
    OVERRIDABLE_FIELDS = {
        'config_file_templates': (_is_str_list, "a list of strings"),
        'php_binary_template': (_is_optional_str, "a string or null"),
        'require_binary': (_is_bool, "true or false"),
        'service_names': (_is_str_list, "a list of strings"),
        'worker_process_name': (_is_optional_str, "a string or null"),
    }

    def __init__(self, stack_id: str, display_name: str,
                 config_file_templates: List[str] = None,
                 php_binary_template: str = None,
                 require_binary: bool = False,
                 service_names: List[str] = None,
                 worker_process_name: str = None):
        self.stack_id = stack_id
        self.display_name = display_name
        # Checked in order before falling back to the runtime probe
        self.config_file_templates = list(config_file_templates or [])
        self.php_binary_template = php_binary_template
        # When True a missing PHP binary skips the version outright
        self.require_binary = require_binary
        self.service_names = list(service_names or [])
        self.worker_process_name = worker_process_name

    def format_path(self, template: Optional[str], version: str) -> Optional[Path]:
        if not template:
            return None
        return Path(template.format(version=version, version_nodot=version.replace('.', '')))

    def get_config_file_candidates(self, version: str) -> List[Path]:
        """Returns the static php.ini candidates for a version, primary first."""
        return [self.format_path(t, version) for t in self.config_file_templates]

    def get_php_binary(self, version: str) -> Optional[Path]:
        return self.format_path(self.php_binary_template, version)

    def with_overrides(self, overrides: Dict[str, Any]) -> 'StackDefinition':
        """
        Returns a copy of this definition with OVERRIDABLE_FIELDS replaced.
        Raises ValueError for any other key or a value of the wrong type.
        """
        clone = copy.deepcopy(self)
        for key, value in (overrides or {}).items():
            if key not in self.OVERRIDABLE_FIELDS:
                raise ValueError(
                    f"Unknown stack override '{key}' for stack '{self.stack_id}'. "
                    f"Allowed: {', '.join(sorted(self.OVERRIDABLE_FIELDS))}")
            check, expected = self.OVERRIDABLE_FIELDS[key]
            _check_value(key, value, check, expected, "Stack override")
            setattr(clone, key, copy.deepcopy(value))
        return clone

    def __repr__(self):
        return f"StackDefinition(stack_id={self.stack_id!r})"


# --- Definitions of Supported Web-Server Stacks ---
AVAILABLE_STACKS = {
    "apache": StackDefinition(
        stack_id="apache", display_name="Apache",
        config_file_templates=[
            "/etc/php/{version}/apache2/php.ini",
            # Apache setups proxying to PHP-FPM use the FPM SAPI ini
            "/etc/php/{version}/fpm/php.ini",
        ],
        php_binary_template="/usr/bin/php{version}",
        service_names=["apache2", "httpd"],
    ),
    "openlitespeed": StackDefinition(
        stack_id="openlitespeed", display_name="OpenLiteSpeed",
        php_binary_template="/usr/local/lsws/lsphp{version_nodot}/bin/php",
        require_binary=True,
        service_names=["lsws-rc"],
        worker_process_name="lsphp",
    ),
}
# --- End Stack Definitions ---


# --- InstallerConfig Class ---
class InstallerConfig:
    """Everything one installer run needs; passed explicitly to run_install()."""

    # Keys accepted from a JSON config file, with the value type each must have
    FILE_KEYS = {
        'stack': (_is_str, "a string"),
        'versions': (_is_str_list, "a list of strings"),
        'download_url': (_is_str, "a string"),
        'temp_parent_dir': (_is_optional_str, "a string or null"),
        'loader_prefix': (_is_str, "a string"),
        'loader_platform': (_is_str, "a string"),
        'loader_extension': (_is_str, "a string"),
        'archive_subdir': (_is_str, "a string"),
        'required_tools': (_is_str_list, "a list of strings"),
        'require_root': (_is_bool, "true or false"),
        'download_timeout': (_is_number, "a number"),
        'stack_overrides': (_is_dict, "an object"),
    }

    def __init__(self, stack: str,
                 versions: List[str] = None,
                 download_url: str = IONCUBE_DOWNLOAD_URL,
                 temp_parent_dir: Optional[Path] = None,
                 loader_prefix: str = LOADER_PREFIX,
                 loader_platform: str = LOADER_PLATFORM,
                 loader_extension: str = LOADER_EXTENSION,
                 archive_subdir: str = ARCHIVE_SUBDIR,
                 required_tools: List[str] = None,
                 require_root: bool = True,
                 download_timeout: float = DOWNLOAD_TIMEOUT,
                 stack_overrides: Dict[str, Any] = None):
        if stack not in AVAILABLE_STACKS:
            raise ValueError(f"Unknown stack '{stack}'. Choose one of: {', '.join(sorted(AVAILABLE_STACKS))}")
        self.stack = stack
        self.versions = list(versions) if versions else list(DEFAULT_PHP_VERSIONS)
        self.download_url = download_url
        self.temp_parent_dir = Path(temp_parent_dir) if temp_parent_dir else None
        self.loader_prefix = loader_prefix
        self.loader_platform = loader_platform
        self.loader_extension = loader_extension
        self.archive_subdir = archive_subdir
        self.required_tools = list(required_tools) if required_tools is not None else list(REQUIRED_TOOLS)
        self.require_root = require_root
        self.download_timeout = download_timeout
        self.stack_overrides = dict(stack_overrides or {})
        # Fail at load time, not halfway through a run
        AVAILABLE_STACKS[stack].with_overrides(self.stack_overrides)

    @property
    def stack_definition(self) -> StackDefinition:
        return AVAILABLE_STACKS[self.stack].with_overrides(self.stack_overrides)

    def loader_filename(self, version: str) -> str:
        """e.g. ioncube_loader_lin_8.2.so"""
        return f"{self.loader_prefix}_{self.loader_platform}_{version}.{self.loader_extension}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **overrides) -> 'InstallerConfig':
        values = {}
        for key, value in (data or {}).items():
            if key not in cls.FILE_KEYS:
                logger.warning(f"CONFIG: Ignoring unknown config key '{key}'.")
                continue
            check, expected = cls.FILE_KEYS[key]
            _check_value(key, value, check, expected, "Config key")
            values[key] = value
        # CLI overrides win over file values, None means "not given"
        values.update({k: v for k, v in overrides.items() if v is not None})
        if 'stack' not in values:
            raise ValueError("No stack configured. Pass --stack or set 'stack' in the config file.")
        return cls(**values)

    def __repr__(self):
        return f"InstallerConfig(stack={self.stack!r}, versions={self.versions!r}, url={self.download_url!r})"


def load_config_file(config_file: Path) -> Dict[str, Any]:
    """
    Reads an installer JSON config file. A missing file yields an empty dict;
    unreadable or malformed files raise ValueError.
    """
    config_file = Path(config_file)
    if not config_file.is_file():
        logger.debug(f"CONFIG: Config file {config_file} not found. Using defaults.")
        return {}
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e_json:
        raise ValueError(f"Error decoding JSON from {config_file}: {e_json}") from e_json
    except OSError as e_io:
        raise ValueError(f"Could not read config file {config_file}: {e_io.strerror}") from e_io
    if not isinstance(data, dict):
        raise ValueError(f"Invalid format in {config_file}: expected a JSON object.")
    logger.info(f"CONFIG: Loaded settings from {config_file}")
    return data


# --- Misc ---
APP_NAME = "zendloader"


def ensure_dir(path: Path):
    """Creates a directory if it doesn't exist. Returns True on success."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured directory exists: {path}")
        return True
    except OSError as e:
        logger.error(f"CONFIG_ERROR: Error creating directory {path}: {e}", exc_info=True)
        return False
