"""Pydantic schemas for the execution engine's HTTP and websocket payloads."""

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ============================================================================
# HTTP PAYLOADS
# ============================================================================


class ImageRef(BaseModel):
    """Reference to an image stored by the engine."""

    filename: str = Field(..., description="File name on the engine")
    subfolder: str = Field("", description="Sub folder inside the image directory")
    type: str = Field("output", description="Image directory: output, input or temp")


class QueuePromptResponse(BaseModel):
    """Response to POST /prompt."""

    prompt_id: str = Field(..., description="ID assigned to the queued prompt")
    number: int = Field(0, description="Position counter in the engine queue")
    node_errors: dict[str, Any] = Field(default_factory=dict, description="Per-node validation errors")


class UploadImageResponse(BaseModel):
    """Response to POST /upload/image."""

    name: str = Field(..., description="Stored file name")
    subfolder: str = Field("", description="Sub folder the file was stored in")
    type: str = Field("input", description="Image directory")


# ============================================================================
# ENGINE → CLIENT WEBSOCKET MESSAGES
# ============================================================================


class _EngineData(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ExecInfo(_EngineData):
    queue_remaining: int = 0


class StatusInfo(_EngineData):
    exec_info: ExecInfo = Field(default_factory=ExecInfo)


class StatusData(_EngineData):
    status: StatusInfo = Field(default_factory=StatusInfo)
    sid: str | None = None


class StatusMessage(_EngineData):
    type: Literal["status"] = "status"
    data: StatusData


class PromptData(_EngineData):
    prompt_id: str | None = None


class ExecutionStartMessage(_EngineData):
    type: Literal["execution_start"] = "execution_start"
    data: PromptData


class ExecutionSuccessMessage(_EngineData):
    type: Literal["execution_success"] = "execution_success"
    data: PromptData


class ExecutionCachedData(PromptData):
    nodes: list[str] = Field(default_factory=list)


class ExecutionCachedMessage(_EngineData):
    type: Literal["execution_cached"] = "execution_cached"
    data: ExecutionCachedData


class ExecutingData(PromptData):
    node: str | None = None


class ExecutingMessage(_EngineData):
    type: Literal["executing"] = "executing"
    data: ExecutingData


class ProgressData(PromptData):
    value: int
    max: int
    node: str | None = None


class ProgressMessage(_EngineData):
    type: Literal["progress"] = "progress"
    data: ProgressData


class ExecutedData(PromptData):
    node: str
    output: dict[str, Any] = Field(default_factory=dict)


class ExecutedMessage(_EngineData):
    type: Literal["executed"] = "executed"
    data: ExecutedData


class ExecutionErrorData(PromptData):
    node_id: str | None = None
    node_type: str | None = None
    exception_message: str = ""
    exception_type: str = ""
    traceback: list[str] = Field(default_factory=list)


class ExecutionErrorMessage(_EngineData):
    type: Literal["execution_error"] = "execution_error"
    data: ExecutionErrorData


class ExecutionInterruptedData(PromptData):
    node_id: str | None = None
    node_type: str | None = None


class ExecutionInterruptedMessage(_EngineData):
    type: Literal["execution_interrupted"] = "execution_interrupted"
    data: ExecutionInterruptedData


EngineMessage = Annotated[
    StatusMessage
    | ExecutionStartMessage
    | ExecutionSuccessMessage
    | ExecutionCachedMessage
    | ExecutingMessage
    | ProgressMessage
    | ExecutedMessage
    | ExecutionErrorMessage
    | ExecutionInterruptedMessage,
    Field(discriminator="type"),
]

ENGINE_MESSAGE_ADAPTER: TypeAdapter[EngineMessage] = TypeAdapter(EngineMessage)

ENGINE_MESSAGE_TYPES = frozenset(
    {
        "status",
        "execution_start",
        "execution_success",
        "execution_cached",
        "executing",
        "progress",
        "executed",
        "execution_error",
        "execution_interrupted",
    }
)


# ============================================================================
# PER-PROMPT MESSAGES DELIVERED TO CALLERS
# ============================================================================


class QueuedItemStoppedReason(str, Enum):
    """Why a queued prompt stopped."""

    FINISHED = "finished"
    INTERRUPTED = "interrupted"
    ERROR = "error"


class PromptExecutionException(BaseModel):
    """Error reported by the engine while executing a prompt."""

    node_id: int | None = Field(None, description="Node that failed")
    node_type: str | None = Field(None, description="Class type of the failing node")
    message: str = Field("", description="Exception message")
    exception_type: str = Field("", description="Exception class name")
    traceback: list[str] = Field(default_factory=list, description="Formatted traceback lines")

    def __str__(self) -> str:
        return f"{self.exception_type or 'Error'} in node {self.node_id} ({self.node_type}): {self.message}"


class PromptMessageStarted(BaseModel):
    type: Literal["started"] = "started"
    prompt_id: str = Field(..., description="Prompt that started executing")


class PromptMessageExecuting(BaseModel):
    type: Literal["executing"] = "executing"
    node_id: int = Field(..., description="Node being executed")
    title: str = Field("", description="Title of the node being executed")


class PromptMessageProgress(BaseModel):
    type: Literal["progress"] = "progress"
    value: int = Field(..., description="Current step")
    max: int = Field(..., description="Total steps")
    node_id: int | None = Field(None, description="Node reporting progress")


class PromptMessageData(BaseModel):
    type: Literal["data"] = "data"
    node_id: int = Field(..., description="Node that produced the output")
    images: list[ImageRef] = Field(default_factory=list, description="Images produced by the node")
    output: dict[str, Any] = Field(default_factory=dict, description="Raw node output")


class PromptMessageStopped(BaseModel):
    type: Literal["stopped"] = "stopped"
    reason: QueuedItemStoppedReason = Field(..., description="Why execution stopped")
    exception: PromptExecutionException | None = Field(None, description="Failure details")


PromptMessage = (
    PromptMessageStarted
    | PromptMessageExecuting
    | PromptMessageProgress
    | PromptMessageData
    | PromptMessageStopped
)
