"""Error taxonomy for the research society.

Ledgers and adapters raise :class:`ResearchError` subclasses. The tool
layer turns them into structured error results for the calling agent;
anything else propagates out of the tick and stops the run.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    NOT_FOUND = "not_found_error"
    INVALID_PARAMETERS = "invalid_parameters_error"
    VALIDATION = "validation_error"
    RESOURCE_CREATION = "resource_creation_error"
    RESOURCE_UPDATE = "resource_update_error"
    MODEL = "model_error"
    COMPUTER = "computer_error"
    FATAL_SCHEDULER = "fatal_scheduler_error"


class ResearchError(Exception):
    """Base exception for every error the society reports.

    Attributes:
        code: Category of the error.
        message: Human-readable description.
        cause: Underlying exception, if any.
    """

    code: ErrorCode = ErrorCode.FATAL_SCHEDULER

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        code: Optional[ErrorCode] = None,
    ) -> None:
        self.message = message
        self.cause = cause
        if code is not None:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class NotFoundError(ResearchError):
    code = ErrorCode.NOT_FOUND


class InvalidParametersError(ResearchError):
    code = ErrorCode.INVALID_PARAMETERS


class ValidationError(ResearchError):
    code = ErrorCode.VALIDATION


class ResourceCreationError(ResearchError):
    code = ErrorCode.RESOURCE_CREATION


class ResourceUpdateError(ResearchError):
    code = ErrorCode.RESOURCE_UPDATE


class ModelError(ResearchError):
    code = ErrorCode.MODEL


class ComputerError(ResearchError):
    code = ErrorCode.COMPUTER


class SchedulerError(ResearchError):
    code = ErrorCode.FATAL_SCHEDULER
