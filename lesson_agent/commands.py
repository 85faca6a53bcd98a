from __future__ import annotations

import json
import types
import typing
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

NAME_KEYS = ("name", "tool", "command")
PARAM_KEYS = ("params", "parameters", "arguments")
UNKNOWN_COMMAND_DETAIL = "unknown command"


class UnknownCommandError(Exception):
    def __init__(self, name: str):
        super().__init__(UNKNOWN_COMMAND_DETAIL)
        self.name = name


class CommandValidationError(Exception):
    pass


class _CommandModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class SetTitle(_CommandModel):
    name: Literal["set_title"] = "set_title"
    title: str = Field(min_length=1, description="lesson title")


class SetIcon(_CommandModel):
    name: Literal["set_icon"] = "set_icon"
    icon: str = Field(min_length=1, description="a single emoji")


class CreateBlock(_CommandModel):
    name: Literal["create_block"] = "create_block"
    content: str = Field(min_length=1, description="self-contained HTML with inline styles")
    after_index: int | None = Field(default=None, ge=0, description="insert after this block position")


class UpdateBlock(_CommandModel):
    name: Literal["update_block"] = "update_block"
    index: int = Field(ge=0, description="block position, starting at 0")
    content: str = Field(description="replacement content")


class DeleteBlock(_CommandModel):
    name: Literal["delete_block"] = "delete_block"
    index: int = Field(ge=0, description="block position, starting at 0")


class MoveBlock(_CommandModel):
    name: Literal["move_block"] = "move_block"
    index: int = Field(ge=0, description="current block position")
    to_index: int = Field(ge=0, description="target block position")


class CreateHeadingBlock(_CommandModel):
    name: Literal["create_heading_block"] = "create_heading_block"
    text: str = Field(min_length=1, description="heading text")


class CreateCodeBlock(_CommandModel):
    name: Literal["create_code_block"] = "create_code_block"
    code: str = Field(min_length=1, description="source code")
    language: str = Field(default="javascript", description="language name")
    filename: str | None = Field(default=None, description="optional file name")


class CreateReactBlock(_CommandModel):
    name: Literal["create_react_block"] = "create_react_block"
    code: str = Field(min_length=1, description="a complete function App() component")


class CreateMermaidBlock(_CommandModel):
    name: Literal["create_mermaid_block"] = "create_mermaid_block"
    code: str = Field(min_length=1, description="mermaid diagram source")


class CreateMathBlock(_CommandModel):
    name: Literal["create_math_block"] = "create_math_block"
    code: str = Field(min_length=1, description="LaTeX formula")


class CreateQuizBlock(_CommandModel):
    name: Literal["create_quiz_block"] = "create_quiz_block"
    question: str = Field(min_length=1, description="quiz question")
    options: list[str] = Field(min_length=2, description="answer options")
    correct_answer: int = Field(default=0, ge=0, description="position of the correct option")

    @model_validator(mode="after")
    def check_answer(self) -> CreateQuizBlock:
        if self.correct_answer >= len(self.options):
            raise ValueError("correct_answer must point at one of the options")
        return self


class StreamHtmlBlock(_CommandModel):
    name: Literal["stream_html_block"] = "stream_html_block"
    prompt: str = Field(min_length=1, description="what the generated section should contain")
    style: Literal["header", "section", "quiz"] = Field(default="section", description="header, section or quiz")


Command = Annotated[
    Union[
        SetTitle,
        SetIcon,
        CreateBlock,
        UpdateBlock,
        DeleteBlock,
        MoveBlock,
        CreateHeadingBlock,
        CreateCodeBlock,
        CreateReactBlock,
        CreateMermaidBlock,
        CreateMathBlock,
        CreateQuizBlock,
        StreamHtmlBlock,
    ],
    Field(discriminator="name"),
]

COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)


@dataclass(frozen=True, slots=True)
class CommandSpec:
    name: str
    model: type[_CommandModel]
    description: str


COMMAND_SPECS: dict[str, CommandSpec] = {
    spec.name: spec
    for spec in (
        CommandSpec("set_title", SetTitle, "Set the lesson title."),
        CommandSpec("set_icon", SetIcon, "Set the lesson icon."),
        CommandSpec("create_block", CreateBlock, "Add a rich HTML content block."),
        CommandSpec("update_block", UpdateBlock, "Replace the content of an existing block."),
        CommandSpec("delete_block", DeleteBlock, "Delete a block."),
        CommandSpec("move_block", MoveBlock, "Move a block to a new position."),
        CommandSpec("create_heading_block", CreateHeadingBlock, "Add a plain heading."),
        CommandSpec("create_code_block", CreateCodeBlock, "Add a syntax-highlighted code block."),
        CommandSpec("create_react_block", CreateReactBlock, "Add an interactive React component block."),
        CommandSpec("create_mermaid_block", CreateMermaidBlock, "Add a diagram block."),
        CommandSpec("create_math_block", CreateMathBlock, "Add a formula block."),
        CommandSpec("create_quiz_block", CreateQuizBlock, "Add a multiple-choice quiz block."),
        CommandSpec("stream_html_block", StreamHtmlBlock, "Generate a styled HTML section from a prompt, streamed into a new block."),
    )
}

# Commands that only touch document metadata and may run concurrently.
# New commands are order-dependent until added here by hand.
PARALLEL_SAFE_COMMANDS = frozenset({"set_title", "set_icon"})


def is_parallel_safe(name: str) -> bool:
    return name in PARALLEL_SAFE_COMMANDS


def _first_str(raw: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def command_name(raw: Any) -> str:
    if isinstance(raw, dict):
        return _first_str(raw, NAME_KEYS) or "?"
    return "?"


def normalize_command(raw: Any) -> tuple[str, dict[str, Any]]:
    """Accept ``{"name", "params"}`` and the common aliases, returning (name, params)."""
    if not isinstance(raw, dict):
        raise CommandValidationError("malformed command")
    name = _first_str(raw, NAME_KEYS)
    if name is None:
        raise CommandValidationError("command is missing a name")

    for key in PARAM_KEYS:
        if key not in raw:
            continue
        params = raw[key]
        if isinstance(params, str):
            try:
                params = json.loads(params)
            except json.JSONDecodeError as exc:
                raise CommandValidationError(f"{key} is not valid JSON") from exc
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise CommandValidationError(f"{key} must be an object")
        return name, params

    flat = {key: value for key, value in raw.items() if key not in NAME_KEYS}
    return name, flat


def format_validation_error(exc: ValidationError, name: str | None = None) -> str:
    parts: list[str] = []
    for item in exc.errors():
        loc = tuple(item.get("loc", ()))
        # The union tag leads each location.
        if name is not None and loc[:1] == (name,):
            loc = loc[1:]
        location = ".".join(str(part) for part in loc) or "params"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts) or "invalid parameters"


def validate_command(raw: Any) -> Command:
    name, params = normalize_command(raw)
    if name not in COMMAND_SPECS:
        raise UnknownCommandError(name)
    try:
        return COMMAND_ADAPTER.validate_python({**params, "name": name})
    except ValidationError as exc:
        raise CommandValidationError(format_validation_error(exc, name)) from exc


def _type_label(annotation: Any) -> str:
    origin = typing.get_origin(annotation)
    if origin in (Union, types.UnionType):
        labels = [_type_label(arg) for arg in typing.get_args(annotation) if arg is not type(None)]
        return labels[0] if len(labels) == 1 else " | ".join(labels)
    if origin is Literal:
        return " | ".join(repr(arg) for arg in typing.get_args(annotation))
    if origin is list:
        return "array"
    if annotation is int:
        return "number"
    if annotation is bool:
        return "boolean"
    return "string"


def describe_commands() -> str:
    """Render the command vocabulary as prompt text, one command per line."""
    lines: list[str] = []
    for spec in COMMAND_SPECS.values():
        params: list[str] = []
        for field_name, info in spec.model.model_fields.items():
            if field_name == "name":
                continue
            label = f"{field_name}: {_type_label(info.annotation)}"
            if not info.is_required():
                label += " (optional)"
            if info.description:
                label += f" {info.description}"
            params.append(label)
        lines.append(f"- {spec.name}({'; '.join(params)}): {spec.description}")
    return "\n".join(lines)
