"""Fatal error types for the installer.

Anything raised from here aborts the whole run with a non-zero exit code.
Per-version problems are not errors: they are logged and the version skipped.
"""

from typing import Optional


class FatalInstallError(Exception):
    """Base class for errors that abort the installer run."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)

    def format_user_friendly(self) -> str:
        if self.suggestion:
            return f"{self.message} ({self.suggestion})"
        return self.message

    def __str__(self) -> str:
        return self.format_user_friendly()


class PreconditionError(FatalInstallError):
    """Missing privileges or required system tools."""


class DownloadError(FatalInstallError):
    """The loader archive could not be fetched."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("suggestion", "Check your internet connection or the download URL")
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ExtractionError(FatalInstallError):
    """The downloaded archive is corrupt, incomplete or unsafe."""


class ArtifactCopyError(FatalInstallError):
    """A loader could not be copied into a PHP extension directory."""


class ServiceRestartError(FatalInstallError):
    """No candidate web service was active, or its restart failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("suggestion", "Restart the web server manually")
        super().__init__(message, **kwargs)
