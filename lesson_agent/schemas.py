from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class DocumentCreateRequest(BaseModel):
    title: str | None = None
    icon: str | None = None


class BlockResponse(BaseModel):
    id: str
    type: str
    content: str
    caption: str | None = None
    options: list[str] | None = None
    correct_answer: int | None = None
    language: str | None = None
    filename: str | None = None
    show_preview: bool = False


class DocumentResponse(BaseModel):
    id: str
    title: str
    icon: str
    revision: int
    created_at: str
    updated_at: str
    blocks: list[BlockResponse]


class BlockCreateRequest(BaseModel):
    type: Literal["text", "heading", "image", "video", "quiz", "html", "code", "react", "mermaid", "math"] = "text"
    content: str = ""
    after_id: str | None = None
    caption: str | None = None
    options: list[str] | None = None
    correct_answer: int | None = None
    language: str | None = None
    filename: str | None = None
    show_preview: bool | None = None


class BlockPatchRequest(BaseModel):
    field: str = Field(min_length=1)
    value: Any = None


class BlockMoveRequest(BaseModel):
    new_index: int = Field(ge=0)


class CommandResultResponse(BaseModel):
    name: str
    success: bool
    detail: str
    index: int = 0
    execution_mode: str = "sequential"


class TurnResponse(BaseModel):
    id: str
    role: str
    content: str
    command_results: list[CommandResultResponse] | None = None
    is_status: bool = False
    is_streaming: bool = False
    attachments: list[str] = Field(default_factory=list)
    created_at: str | None = None


class SessionResponse(BaseModel):
    document_id: str
    model: str
    busy: bool
    turns: list[TurnResponse]


class AttachmentRequest(BaseModel):
    name: str = Field(min_length=1)
    text: str = ""


class TurnCreateRequest(BaseModel):
    content: str = ""
    images: list[str] = Field(default_factory=list)
    attachments: list[AttachmentRequest] = Field(default_factory=list)


class TaskStatusResponse(BaseModel):
    document_id: str
    status: Literal["running", "cancelling", "idle"]


class RuntimeConfigResponse(BaseModel):
    selected_model: str
    ollama_base_url: str
    ollama_timeout_seconds: int
    agent_mode: bool
    throttle_window_ms: int
    parallel_commands_enabled: bool
    parallel_commands_max_workers: int
    config_path: str


class RuntimeConfigUpdateRequest(BaseModel):
    selected_model: str | None = None
    ollama_base_url: str | None = None
    ollama_timeout_seconds: int | None = None
    agent_mode: bool | None = None
    throttle_window_ms: int | None = None
    parallel_commands_enabled: bool | None = None
    parallel_commands_max_workers: int | None = None


class ModelResponse(BaseModel):
    name: str
    size: int | None = None
    modified_at: str | None = None
    vision: bool = False
