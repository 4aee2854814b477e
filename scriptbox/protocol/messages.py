from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class MessageType(str, Enum):
    EXECUTE = "execute"
    TERMINATE = "terminate"
    READY = "ready"
    COMPLETE = "complete"
    ERROR = "error"


class RecordKind(str, Enum):
    LOG = "log"
    ERROR = "error"
    WARN = "warn"


class OutputRecord(BaseModel):
    """One entry of a run transcript."""

    model_config = ConfigDict(frozen=True)

    type: RecordKind = Field(description="Record kind")
    content: str = Field(description="Rendered output text")
    line: Optional[int] = Field(
        default=None, description="Script line that produced the record, when known"
    )


class RunRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = Field(description="Python source of the script")
    timeout_ms: int = Field(gt=0, description="Wall-clock budget in milliseconds")


class RunResult(BaseModel):
    transcript: list[OutputRecord] = Field(default_factory=list)
    timed_out: bool = Field(default=False, description="Whether the safety timeout fired")
    execution_time: float = Field(default=0.0, description="Run duration in seconds")

    def has_errors(self) -> bool:
        return any(record.type == RecordKind.ERROR for record in self.transcript)


class BaseMessage(BaseModel):
    # Type field will be defined by subclasses with specific Literal values
    id: str = Field(description="Unique message identifier")
    timestamp: float = Field(description="Unix timestamp of message creation")


class ExecuteMessage(BaseMessage):
    type: Literal[MessageType.EXECUTE] = Field(default=MessageType.EXECUTE)
    code: str = Field(description="Python source to run")
    timeout: int = Field(gt=0, description="Safety timeout in milliseconds")
    grace_period_ms: int = Field(
        default=100, ge=0, description="Settling delay after the script body finishes"
    )
    poll_interval_ms: int = Field(
        default=50, gt=0, description="Pending-work poll interval while settling"
    )
    transcript_capacity: int = Field(
        default=1000, gt=0, description="Maximum number of ordinary transcript records"
    )


class TerminateMessage(BaseMessage):
    type: Literal[MessageType.TERMINATE] = Field(default=MessageType.TERMINATE)


class ReadyMessage(BaseMessage):
    type: Literal[MessageType.READY] = Field(default=MessageType.READY)
    session_id: str = Field(description="Session identifier")


class CompleteMessage(BaseMessage):
    type: Literal[MessageType.COMPLETE] = Field(default=MessageType.COMPLETE)
    execution_id: str = Field(description="ID of the execute message being answered")
    logs: list[OutputRecord] = Field(default_factory=list, description="Ordered transcript")
    timed_out: bool = Field(default=False, description="Whether the safety timeout fired")
    execution_time: float = Field(default=0.0, description="Run duration in seconds")


class ErrorMessage(BaseMessage):
    type: Literal[MessageType.ERROR] = Field(default=MessageType.ERROR)
    traceback: str = Field(description="Full traceback string")
    exception_type: str = Field(description="Exception class name")
    exception_message: str = Field(description="Exception message")
    execution_id: Optional[str] = Field(
        default=None, description="ID of the execution that caused the error"
    )


Message = Union[
    ExecuteMessage,
    TerminateMessage,
    ReadyMessage,
    CompleteMessage,
    ErrorMessage,
]


def parse_message(data: dict[str, Any]) -> Message:
    """Parse a message from a dictionary.

    Args:
        data: Dictionary containing message data

    Returns:
        Parsed message object

    Raises:
        ValueError: If message type is unknown or data is invalid
    """
    message_type = data.get("type")
    if message_type is None:
        raise ValueError("Message type is missing")

    message_classes: dict[str, type[Message]] = {
        MessageType.EXECUTE.value: ExecuteMessage,
        MessageType.TERMINATE.value: TerminateMessage,
        MessageType.READY.value: ReadyMessage,
        MessageType.COMPLETE.value: CompleteMessage,
        MessageType.ERROR.value: ErrorMessage,
    }

    message_class = message_classes.get(message_type)
    if not message_class:
        raise ValueError(f"Unknown message type: {message_type}")

    return message_class(**data)
