"""Exception hierarchy for anka builds."""

from typing import Optional

ALREADY_EXISTS_CODE = 18
NOT_FOUND_CODE = 3


class AnkaError(Exception):
    """Base exception for every failure raised by ankabuild."""

    pass


class TransportError(AnkaError):
    """Raised when the anka process could not be run or produced no usable result."""

    pass


class ProtocolError(TransportError):
    """Raised when the machine readable output cannot be isolated or decoded."""

    pass


class ToolError(AnkaError):
    """Raised when anka reports a non-OK status in its machine readable output."""

    def __init__(self, message: str, code: int = 0, exception_type: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.exception_type = exception_type

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code}, message={self.message!r})"


class VMAlreadyExistsError(ToolError):
    """Raised when the target VM name is already taken."""

    pass


class VMNotFoundError(ToolError):
    """Raised when the requested VM does not exist."""

    pass


class ConfigurationError(AnkaError):
    """Raised when the build configuration violates an invariant."""

    pass


class DiskShrinkError(ConfigurationError):
    """Raised when a requested disk size is smaller than the current one."""

    def __init__(self, vm_name: str, current: int, requested: int):
        super().__init__(
            f"Shrinking VM disks is not allowed! {vm_name} disk size (bytes): {current}, requested: {requested}"
        )
        self.vm_name = vm_name
        self.current = current
        self.requested = requested


class GuestCommandError(AnkaError):
    """Raised when a command the build depends on fails inside the guest."""

    def __init__(self, command: str, exit_code: int):
        super().__init__(f"Command {command!r} exited with {exit_code}")
        self.command = command
        self.exit_code = exit_code


class RegistryError(AnkaError):
    """Raised when a registry REST call fails."""

    pass


class BuildError(AnkaError):
    """Raised by the builder when a step halted the build."""

    def __init__(self, step: str, error: BaseException):
        super().__init__(f"{step}: {error}")
        self.step = step
        self.error = error


def classify_tool_error(message: str, code: int = 0, exception_type: Optional[str] = None) -> ToolError:
    """Map an anka error code onto the matching ToolError subclass."""
    if code == ALREADY_EXISTS_CODE:
        return VMAlreadyExistsError(message, code, exception_type)
    if code == NOT_FOUND_CODE:
        return VMNotFoundError(message, code, exception_type)
    return ToolError(message, code, exception_type)
