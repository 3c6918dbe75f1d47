"""
Exceptions raised by agentvps.
"""


class AgentVPSError(Exception):
    """Base exception for all agentvps errors."""

    pass


class ConfigurationError(AgentVPSError):
    """Raised when required input or a local tool is missing."""

    pass


class ProviderAPIError(AgentVPSError):
    """Raised when a cloud API call fails and nothing could reconcile it."""

    def __init__(self, message: str, status: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class UnreachableError(AgentVPSError):
    """Raised when a server never accepts an SSH session within the budget."""

    pass


class CommandError(AgentVPSError):
    """Raised when a command on the host exits non-zero."""

    def __init__(self, command: str, returncode: int):
        super().__init__(f"Command failed with exit code {returncode}: {command}")
        self.command = command
        self.returncode = returncode


class DownloadError(AgentVPSError):
    """Raised when an installer download fails."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Download failed: {url} ({reason})")
        self.url = url
        self.reason = reason


class StepFailure(AgentVPSError):
    """Raised when a fatal pipeline step fails; the run is aborted."""

    def __init__(self, step: str, label: str, log_path: str, cause: Exception | str):
        super().__init__(f"{label} failed: {cause}. See {log_path} for details")
        self.step = step
        self.label = label
        self.log_path = log_path
        self.cause = cause


class MissingDependencyError(AgentVPSError):
    """Raised when a step needs something an earlier step should have provided."""

    pass
