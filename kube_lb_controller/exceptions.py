"""Custom exception hierarchy for the load-balancer controller."""

from __future__ import annotations


class LBControllerError(Exception):
    """Base exception for all controller errors."""


class ConfigError(LBControllerError):
    """Invalid or missing configuration."""


class ClusterAPIError(LBControllerError):
    """Error communicating with the Kubernetes API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BackendAPIError(LBControllerError):
    """Error communicating with the load-balancer management API."""

    def __init__(self, message: str, status_code: int | None = None, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ResourceNotFound(BackendAPIError):
    """HTTP 404: the addressed load-balancer object does not exist."""

    def __init__(self, message: str = "Resource not found", response_body: str | None = None):
        super().__init__(message, status_code=404, response_body=response_body)


class ResourceConflict(BackendAPIError):
    """HTTP 409: the object already exists."""

    def __init__(self, message: str = "Resource already exists", response_body: str | None = None):
        super().__init__(message, status_code=409, response_body=response_body)


class AllocationError(LBControllerError):
    """Virtual IP allocation failed."""


class RangeExhausted(AllocationError):
    """No free address remains in the configured virtual IP range."""

    def __init__(self, start_ip: str, end_ip: str):
        super().__init__(f"Exhausted virtual IP range {start_ip}-{end_ip}")
        self.start_ip = start_ip
        self.end_ip = end_ip


class AllocationConflict(AllocationError):
    """The allocation table changed between read and write."""


class ValidationError(LBControllerError):
    """A configuration group or cluster object cannot be used as-is."""


class InvalidGroupError(ValidationError):
    """A configuration group is missing required fields or is malformed."""

    def __init__(self, group: str, reason: str):
        super().__init__(f"Group '{group}' is invalid: {reason}")
        self.group = group
        self.reason = reason


class NodeAddressError(ValidationError):
    """A node carries no address of a recognized type."""

    def __init__(self, node: str, known_addresses: list[tuple[str, str]] | None = None):
        super().__init__(f"Host IP unknown for node '{node}'; known addresses: {known_addresses or []}")
        self.node = node


class ProvisionError(LBControllerError):
    """Provisioning a group failed; created resources were compensated."""

    def __init__(
        self,
        group: str,
        cause: BaseException | None = None,
        compensation_errors: list[BaseException] | None = None,
    ):
        message = f"Provisioning of group '{group}' failed"
        if cause is not None:
            message += f": {cause}"
        if compensation_errors:
            message += f" ({len(compensation_errors)} cleanup step(s) also failed)"
        super().__init__(message)
        self.group = group
        self.cause = cause
        self.compensation_errors = list(compensation_errors or [])


class DaemonReloadError(LBControllerError):
    """The local daemon reload command failed."""


class FatalError(LBControllerError):
    """Unrecoverable local failure; the controller must stop."""


class DaemonConfigError(FatalError):
    """The local daemon configuration file could not be written."""
