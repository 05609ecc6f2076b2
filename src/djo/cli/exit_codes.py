"""Centralized exit codes for all CLI commands.

Exit code ranges:
    0: Success
    1-9: General errors
    10-19: Validation errors (payload, config, arguments)
    20-29: Target errors (job or dead letter not found)
    40-49: Operation errors (conflicts, rejected submissions, database)
"""

from enum import IntEnum

from djo.jobs.exceptions import (
    ConcurrencyLimitError,
    ConcurrentModificationError,
    DeadLetterAlreadyReprocessedError,
    DeadLetterNotFoundError,
    IdempotencyConflictError,
    InvalidTransitionError,
    JobNotFoundError,
    OrchestratorError,
    PayloadValidationError,
    QueueOverloadedError,
    RateLimitedError,
)


class ExitCode(IntEnum):
    """Exit codes for djo CLI commands."""

    # Success (0)
    SUCCESS = 0

    # General errors (1-9)
    GENERAL_ERROR = 1
    INTERRUPTED = 2

    # Validation errors (10-19)
    PAYLOAD_INVALID = 10
    CONFIG_ERROR = 11
    INVALID_ARGUMENTS = 12

    # Target errors (20-29)
    JOB_NOT_FOUND = 20
    DEAD_LETTER_NOT_FOUND = 21

    # Operation errors (40-49)
    OPERATION_FAILED = 40
    CONFLICT = 41
    DATABASE_ERROR = 42
    QUEUE_OVERLOADED = 43
    RATE_LIMITED = 44
    JOB_FAILED = 45


_ERROR_EXIT_CODES: list[tuple[type[OrchestratorError], ExitCode]] = [
    (PayloadValidationError, ExitCode.PAYLOAD_INVALID),
    (JobNotFoundError, ExitCode.JOB_NOT_FOUND),
    (DeadLetterNotFoundError, ExitCode.DEAD_LETTER_NOT_FOUND),
    (IdempotencyConflictError, ExitCode.CONFLICT),
    (DeadLetterAlreadyReprocessedError, ExitCode.CONFLICT),
    (ConcurrentModificationError, ExitCode.CONFLICT),
    (InvalidTransitionError, ExitCode.CONFLICT),
    (ConcurrencyLimitError, ExitCode.CONFLICT),
    (QueueOverloadedError, ExitCode.QUEUE_OVERLOADED),
    (RateLimitedError, ExitCode.RATE_LIMITED),
]


def exit_code_for(error: OrchestratorError) -> ExitCode:
    """Map an engine error to the CLI exit code reported for it."""
    for error_type, code in _ERROR_EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return ExitCode.OPERATION_FAILED
