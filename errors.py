from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """
    Central registry of maintenance error codes.
    Each code maps to a process exit status and a default message.
    """
    # Configuration Errors (1xxx)
    INVALID_POLICY = ("CFG_1001", 2, "The table policy is invalid.")
    CALENDAR_INTERVAL = ("CFG_1002", 2, "Calendar-relative intervals (months, years) are not supported.")
    TABLE_NOT_REGISTERED = ("CFG_1003", 2, "The table is not registered for maintenance.")

    # Execution Errors (2xxx)
    OPERATION_FAILED = ("EXEC_2001", 0, "A partition operation failed; the table will be retried next pass.")
    OPERATION_TIMEOUT = ("EXEC_2002", 0, "A partition operation exceeded its timeout.")
    DROP_FAILED = ("EXEC_2003", 0, "Partition was detached but could not be dropped.")
    LAST_RUN_NOT_RECORDED = ("EXEC_2004", 0, "Partition work committed but last_run_at could not be recorded.")

    # Host Errors (3xxx)
    HOST_UNAVAILABLE = ("HOST_3001", 1, "The database host is unreachable.")

    def __init__(self, code: str, exit_status: int, message: str):
        self.code = code
        self.exit_status = exit_status
        self.message = message


class MaintenanceError(Exception):
    """Base exception carrying an ErrorCode."""

    default_code = ErrorCode.OPERATION_FAILED

    def __init__(self, message: Optional[str] = None, error_code: Optional[ErrorCode] = None):
        self.error_code = error_code or self.default_code
        super().__init__(message or self.error_code.message)

    @property
    def code(self) -> str:
        return self.error_code.code


class PolicyValidationError(MaintenanceError, ValueError):
    """Invalid table policy, rejected at registration time."""

    default_code = ErrorCode.INVALID_POLICY


class TableNotRegisteredError(MaintenanceError):
    default_code = ErrorCode.TABLE_NOT_REGISTERED


class TransientExecutionError(MaintenanceError):
    """One table's maintenance failed; isolated and retried on the next pass."""

    default_code = ErrorCode.OPERATION_FAILED


class HostUnavailableError(MaintenanceError):
    """The database host went away. Fatal to the whole daemon."""

    default_code = ErrorCode.HOST_UNAVAILABLE
