import sys
import argparse
import logging
import logging.handlers
from pathlib import Path
from typing import Optional, List

from zendloader.core import config
from zendloader.core.errors import FatalInstallError
from zendloader.core.installer import run_install

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


# --- Custom Log Formatter for Colors ---
class ColorLogFormatter(logging.Formatter):
    """Adds ANSI color codes to log messages based on level for console output."""

    GREY = "\x1b[38;20m"
    YELLOW = "\x1b[33;20m"  # Warning
    RED = "\x1b[31;20m"     # Error
    BOLD_RED = "\x1b[31;1m"  # Critical
    RESET = "\x1b[0m"

    BASE_FORMAT = '%(asctime)s [%(levelname)-7s] %(name)s: %(message)s'
    DATE_FORMAT = '%H:%M:%S'

    FORMATS = {
        logging.DEBUG: GREY + BASE_FORMAT + RESET,
        logging.INFO: BASE_FORMAT,
        logging.WARNING: YELLOW + BASE_FORMAT + RESET,
        logging.ERROR: RED + BASE_FORMAT + RESET,
        logging.CRITICAL: BOLD_RED + BASE_FORMAT + RESET
    }

    def __init__(self, use_color: bool = True, datefmt: Optional[str] = None):
        super().__init__(datefmt=datefmt or self.DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        if self.use_color:
            log_fmt = self.FORMATS.get(record.levelno, self.BASE_FORMAT)
        else:
            log_fmt = self.BASE_FORMAT
        formatter = logging.Formatter(log_fmt, datefmt=self.datefmt)
        return formatter.format(record)
# --- End Custom Log Formatter ---


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """Console on stderr (colored when a TTY) plus an optional rotating file log."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(ColorLogFormatter(use_color=sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    # urllib3 is chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    if log_file:
        log_file = Path(log_file)
        if config.ensure_dir(log_file.parent):
            try:
                file_handler = logging.handlers.RotatingFileHandler(
                    log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8'
                )
                file_handler.setFormatter(logging.Formatter(ColorLogFormatter.BASE_FORMAT,
                                                            datefmt=ColorLogFormatter.DATE_FORMAT))
                file_handler.setLevel(logging.DEBUG)
                root_logger.addHandler(file_handler)
                logger.debug(f"CLI: File logging initialized at: {log_file}")
            except OSError as log_e:
                logger.error(f"CLI: Failed to set up file logging at {log_file}: {log_e}")
        else:
            logger.warning(f"CLI: Log directory '{log_file.parent}' could not be ensured. Skipping file logging.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=config.APP_NAME,
        description="Install a PHP loader extension for several PHP versions and restart the web server."
    )
    parser.add_argument('--stack', choices=sorted(config.AVAILABLE_STACKS),
                        help='Web-server stack the PHP runtimes belong to.')
    parser.add_argument('--versions', nargs='+', metavar='VERSION',
                        help=f"PHP versions to install for (default: {' '.join(config.DEFAULT_PHP_VERSIONS)}).")
    parser.add_argument('--url', dest='download_url', metavar='URL', help='Loader archive URL.')
    parser.add_argument('--tmp-dir', dest='temp_parent_dir', type=Path, metavar='DIR',
                        help='Parent directory for the temporary working directory.')
    parser.add_argument('--config', dest='config_file', type=Path, metavar='FILE',
                        help=f'JSON config file (default: {config.DEFAULT_CONFIG_FILE}).')
    parser.add_argument('--no-root-check', action='store_true',
                        help='Do not require root privileges.')
    parser.add_argument('--log-file', type=Path, metavar='FILE', help='Also write a debug log to FILE.')
    parser.add_argument('-v', '--verbose', action='store_true', help='Show debug output.')
    return parser


def load_installer_config(args: argparse.Namespace) -> config.InstallerConfig:
    """Defaults < JSON config file < command line."""
    explicit_file = args.config_file is not None
    config_file = args.config_file if explicit_file else config.DEFAULT_CONFIG_FILE
    if explicit_file and not config_file.is_file():
        raise ValueError(f"Config file {config_file} not found.")
    file_data = config.load_config_file(config_file)
    return config.InstallerConfig.from_dict(
        file_data,
        stack=args.stack,
        versions=args.versions,
        download_url=args.download_url,
        temp_parent_dir=args.temp_parent_dir,
        require_root=False if args.no_root_check else None,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        installer_config = load_installer_config(args)
    except ValueError as e:
        logger.error(f"CLI: {e}")
        return EXIT_USAGE
    logger.debug(f"CLI: Using {installer_config!r}")

    try:
        run_install(installer_config)
    except FatalInstallError as e:
        logger.error(f"CLI: {e}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.warning("CLI: Interrupted.")
        return EXIT_INTERRUPTED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
