"""Exception hierarchy shared by every soarpy subsystem."""

from typing import Optional, Sequence


class SoarError(Exception):
    """Base class for all soarpy errors."""

    fatal = True


class ConfigError(SoarError):
    pass


class DatabaseError(SoarError):
    pass


class SyncError(SoarError):
    pass


class MetadataValidationError(SyncError):
    pass


class NetworkError(SoarError):
    """Transient transport failure; eligible for retry."""

    fatal = False


class HttpStatusError(SoarError):
    def __init__(self, url: str, status_code: int, reason: str = "") -> None:
        self.url = url
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"HTTP {status_code} {reason} for {url}".replace("  ", " "))


class ChecksumMismatchError(SoarError):
    def __init__(self, name: str, expected: str, actual: str) -> None:
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch for {name}: expected {expected}, got {actual}")


class ExtractionError(SoarError):
    pass


class DestinationExistsError(SoarError):
    def __init__(self, path) -> None:
        self.path = path
        super().__init__(f"{path} already exists (use force overwrite or skip existing)")


class PackageNotFoundError(SoarError):
    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Package not found: {reference}")


class AmbiguousPackageError(SoarError):
    def __init__(self, reference: str, candidates: Sequence[str]) -> None:
        self.reference = reference
        self.candidates = list(candidates)
        super().__init__(
            f"Package '{reference}' is ambiguous; qualify it with one of: {', '.join(self.candidates)}"
        )


class AmbiguousSelectionError(SoarError):
    def __init__(self, candidates: Sequence[str]) -> None:
        self.candidates = list(candidates)
        super().__init__(f"Multiple assets match ({', '.join(self.candidates)}); refine the filters")


class NoMatchingAssetError(SoarError):
    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"No asset matches the given filters for {source}")


class AlreadyInstalledError(SoarError):
    fatal = False

    def __init__(self, pkg_id: str, version: str) -> None:
        self.pkg_id = pkg_id
        self.version = version
        super().__init__(f"{pkg_id} {version} is already installed")


class PortableConflictError(SoarError):
    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or "--portable cannot be used with --portable-home, --portable-config or --portable-share"
        )


class LockContentionError(SoarError):
    def __init__(self, key: str, holder: Optional[int] = None) -> None:
        self.key = key
        self.holder = holder
        held = f" (held by pid {holder})" if holder else ""
        super().__init__(f"Another operation is in progress for '{key}'{held}")


class DownloadError(SoarError):
    """A transfer could not be written to its destination."""


class FilesystemError(SoarError):
    def __init__(self, action: str, path, cause: OSError) -> None:
        self.action = action
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot {action} {path}: {cause.strerror or cause}")
