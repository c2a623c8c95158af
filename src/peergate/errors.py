from __future__ import annotations


class PeergateError(RuntimeError):
    pass


class ValidationError(PeergateError):
    """Malformed caller input, rejected before any store is touched."""


class NotFoundError(PeergateError):
    pass


class AddressSpaceExhausted(PeergateError):
    pass


class ExternalUtilityUnavailable(PeergateError):
    """The WireGuard control utility could not be run or exited non-zero."""

    def __init__(self, message: str, *, command: str | None = None) -> None:
        super().__init__(message)
        self.command = command


class ConfigValidationFailed(PeergateError):
    """An edit would leave the interface config file structurally invalid."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("config validation failed: " + "; ".join(errors))
        self.errors = list(errors)
