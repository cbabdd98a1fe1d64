from typing import Optional


class DpiwardenError(Exception):
    """
    Root of the dpiwarden error hierarchy.

    Every error carries a stable ``code`` so that callers (CLI, logs, a future
    management API) can branch on the failure kind without parsing messages.
    """

    code: str = "DPIWARDEN_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class StoreError(DpiwardenError):
    """Raised when a store backing file cannot be read or parsed."""

    code = "STORE_ERROR"


class FetchError(DpiwardenError):
    """Raised when a remote resource cannot be fetched after all retries."""

    code = "FETCH_FAILED"

    def __init__(self, message: str, url: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class FetchAbortedError(FetchError):
    """Raised when a fetch is abandoned because its abort signal was set."""

    code = "FETCH_ABORTED"


class ResourceSyncError(DpiwardenError):
    """A single registry entry failed to refresh from its sync URL."""

    code = "RESOURCE_SYNC_FAILED"

    def __init__(self, namespace: str, name: str, cause: Exception):
        self.namespace = namespace
        self.name = name
        self.cause = cause
        super().__init__(f"Failed to sync {namespace}/{name}: {cause}")


class EngineError(DpiwardenError):
    """Base class for engine install and process errors."""

    code = "ENGINE_ERROR"


class VersionNotFoundError(EngineError):
    code = "VER_NOT_FOUND"

    def __init__(self, version: str):
        self.version = version
        super().__init__(f"Version {version} not found")


class TarballNotFoundError(EngineError):
    code = "TAR_NOT_FOUND"

    def __init__(self, tag: str, url: str):
        self.tag = tag
        self.url = url
        super().__init__(f"Tarball {tag} not found at {url}")


class UnpackFailedError(EngineError):
    code = "UNTAR_FAILED"

    def __init__(self, tag: str, reason: str):
        self.tag = tag
        super().__init__(f"Tarball {tag} unpack error: {reason}")


class SpawnError(EngineError):
    """Raised when the engine binary cannot be launched."""

    code = "SPAWN_FAILED"


class SelfUpdateError(DpiwardenError):
    code = "SELF_UPDATE_FAILED"
