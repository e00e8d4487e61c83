"""Server power actions and the errors that block them."""

from __future__ import annotations

from enum import Enum


class PowerAction(str, Enum):
    """An action that changes a server's running state."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    TERMINATE = "kill"

    def is_start(self) -> bool:
        """Return True for actions that end with the server running."""
        return self in (PowerAction.START, PowerAction.RESTART)


def is_valid_power_action(value: str) -> bool:
    """Return True if value names a known power action."""
    try:
        PowerAction(value)
    except ValueError:
        return False
    return True


class ServerStateError(Exception):
    """Raised when a server's state does not permit an operation."""

    message = "server is in an invalid state"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class ServerIsRunningError(ServerStateError):
    message = "server is running"


class ServerSuspendedError(ServerStateError):
    message = "server is currently in a suspended state"


class ServerInstallingError(ServerStateError):
    message = "server is currently installing"


class ServerTransferringError(ServerStateError):
    message = "server is currently being transferred"


class ServerRestoringError(ServerStateError):
    message = "server is currently being restored"


class CrashTooFrequentError(ServerStateError):
    message = "server has crashed too soon after the last detected crash"


class ServerDoesNotExistError(ServerStateError):
    message = "server does not exist on remote system"


def is_too_frequent_crash_error(err: BaseException | None) -> bool:
    """Return True if err reports a crash too soon after the previous one."""
    return isinstance(err, CrashTooFrequentError)


def is_server_does_not_exist_error(err: BaseException | None) -> bool:
    """Return True if err reports a server missing on the remote system."""
    return isinstance(err, ServerDoesNotExistError)