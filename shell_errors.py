"""Typed failures raised by the command shell and the tool-call protocol."""


class ShellError(Exception):
    """Base class for every failure the shell reports back to its caller."""

    kind = "ShellError"

    def render(self) -> str:
        return f"Error: [{self.kind}] {self}"


class UsageError(ShellError):
    kind = "UsageError"


class NotFoundError(ShellError):
    kind = "NotFound"


class PermissionDeniedError(ShellError):
    kind = "PermissionDenied"


class CommandTimeoutError(ShellError):
    kind = "Timeout"


class SubprocessError(ShellError):
    kind = "SubprocessError"


class NetworkError(ShellError):
    kind = "NetworkError"


class ProtocolError(ShellError):
    """Tool-call arguments failed to parse or did not match the catalog."""

    kind = "ProtocolError"


def from_os_error(exc: OSError, target: str = "") -> ShellError:
    label = target or exc.filename or ""
    reason = exc.strerror or str(exc)
    message = f"{label}: {reason}" if label else reason
    if isinstance(exc, FileNotFoundError):
        return NotFoundError(message)
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(message)
    if isinstance(exc, (IsADirectoryError, NotADirectoryError, FileExistsError)):
        return UsageError(message)
    return ShellError(message)
