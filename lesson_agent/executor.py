from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, assert_never

from .cancellation import CancelToken
from .commands import (
    Command,
    CommandValidationError,
    CreateBlock,
    CreateCodeBlock,
    CreateHeadingBlock,
    CreateMathBlock,
    CreateMermaidBlock,
    CreateQuizBlock,
    CreateReactBlock,
    DeleteBlock,
    MoveBlock,
    SetIcon,
    SetTitle,
    StreamHtmlBlock,
    UnknownCommandError,
    UpdateBlock,
    command_name,
    is_parallel_safe,
    validate_command,
)
from .document import Block, Document
from .prompts import build_stream_block_prompt, stream_block_failure, stream_block_placeholder
from .runtime_config import RuntimeConfig, RuntimeConfigStore
from .transport import OllamaClient, TransportError
from .types import CommandResult

logger = logging.getLogger(__name__)

CODE_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*")
HTML_START_RE = re.compile(r"<[^>]+[\s\S]*$")

ResultCallback = Callable[[CommandResult], None]


class CommandExecutionError(Exception):
    pass


@dataclass(slots=True)
class ExecutionContext:
    document: Document
    model: str
    turn_id: str | None = None
    cancel: CancelToken | None = None


def extract_html(text: str) -> str:
    """Strip code fences and anything before the first tag."""
    cleaned = CODE_FENCE_RE.sub("", text)
    match = HTML_START_RE.search(cleaned)
    return match.group(0).strip() if match else ""


def _block_at(document: Document, index: int) -> Block:
    block = document.block_at(index)
    if block is None:
        raise CommandExecutionError(f"Invalid index: {index}")
    return block


class CommandExecutor:
    """Runs parsed commands against a document.

    Parallel-safe commands run together as one batch that finishes before any
    order-dependent command starts. Order-dependent commands then run one at a
    time in the order they were parsed. A failing command yields a failed
    result and never stops the others.
    """

    def __init__(self, *, client: OllamaClient | None = None, runtime_config_store: RuntimeConfigStore | None = None):
        self.client = client
        self.runtime_config_store = runtime_config_store

    def _runtime_config(self) -> RuntimeConfig:
        if self.runtime_config_store is not None:
            return self.runtime_config_store.get()
        return RuntimeConfig()

    async def execute(
        self,
        raw_commands: list[Any],
        context: ExecutionContext,
        *,
        on_executed: ResultCallback | None = None,
    ) -> list[CommandResult]:
        runtime = self._runtime_config()
        indexed = list(enumerate(raw_commands))
        if runtime.parallel_commands_enabled:
            parallel = [item for item in indexed if is_parallel_safe(command_name(item[1]))]
            ordered = [item for item in indexed if not is_parallel_safe(command_name(item[1]))]
        else:
            parallel, ordered = [], indexed

        cancel = context.cancel
        results: list[CommandResult] = []

        if parallel:
            if cancel is not None and cancel.cancelled:
                logger.info("Skipping commands after cancellation turn_id=%s remaining=%s", context.turn_id, len(indexed))
                return results

            max_workers = max(1, min(int(runtime.parallel_commands_max_workers), 8))
            logger.info(
                "Executing parallel command batch turn_id=%s size=%s max_workers=%s",
                context.turn_id,
                len(parallel),
                max_workers,
            )
            semaphore = asyncio.Semaphore(max_workers)

            async def run_batch_item(item: tuple[int, Any]) -> CommandResult:
                index, raw = item
                async with semaphore:
                    return await self._execute_one(index, raw, context, "parallel", on_executed)

            tasks = [asyncio.create_task(run_batch_item(item)) for item in parallel]
            results.extend(await asyncio.gather(*tasks))

        for position, (index, raw) in enumerate(ordered):
            if cancel is not None and cancel.cancelled:
                logger.info(
                    "Skipping commands after cancellation turn_id=%s remaining=%s",
                    context.turn_id,
                    len(ordered) - position,
                )
                break
            results.append(await self._execute_one(index, raw, context, "sequential", on_executed))

        return results

    async def _execute_one(
        self,
        index: int,
        raw: Any,
        context: ExecutionContext,
        execution_mode: str,
        on_executed: ResultCallback | None,
    ) -> CommandResult:
        name = command_name(raw)
        started = time.perf_counter()
        success = False
        try:
            command = validate_command(raw)
            detail = await self._apply(command, context)
            success = True
        except UnknownCommandError as exc:
            detail = str(exc)
        except (CommandValidationError, CommandExecutionError, TransportError) as exc:
            detail = str(exc)
        except Exception as exc:
            logger.exception("Command handler crashed turn_id=%s index=%s name=%s", context.turn_id, index, name)
            detail = str(exc) or exc.__class__.__name__

        duration_ms = int((time.perf_counter() - started) * 1000)
        result = CommandResult(
            name=name,
            success=success,
            detail=detail,
            index=index,
            execution_mode=execution_mode,
            turn_id=context.turn_id,
            duration_ms=duration_ms,
        )
        log = logger.info if success else logger.warning
        log(
            "Command executed turn_id=%s index=%s name=%s mode=%s success=%s duration_ms=%s detail=%r",
            context.turn_id,
            index,
            name,
            execution_mode,
            success,
            duration_ms,
            detail[:200],
        )
        if on_executed is not None:
            try:
                on_executed(result)
            except Exception:
                logger.exception("Result callback failed turn_id=%s index=%s name=%s", context.turn_id, index, name)
        return result

    def _add(self, document: Document, data: dict[str, Any], *, after_index: int | None = None) -> str:
        after_id = _block_at(document, after_index).id if after_index is not None else None
        block_id = document.add_block(data, after_id=after_id)
        return f"Added {data['type']} block at position {document.index_of(block_id)}"

    async def _apply(self, command: Command, context: ExecutionContext) -> str:
        document = context.document
        match command:
            case SetTitle():
                document.set_title(command.title)
                return f"Title set to {command.title!r}"
            case SetIcon():
                document.set_icon(command.icon)
                return f"Icon set to {command.icon}"
            case CreateBlock():
                return self._add(
                    document,
                    {"type": "html", "content": command.content, "show_preview": True},
                    after_index=command.after_index,
                )
            case UpdateBlock():
                block = _block_at(document, command.index)
                document.update_block(block.id, "content", command.content)
                return f"Updated block {command.index}"
            case DeleteBlock():
                block = _block_at(document, command.index)
                document.delete_block(block.id)
                return f"Deleted block {command.index}"
            case MoveBlock():
                block = _block_at(document, command.index)
                if command.to_index >= len(document):
                    raise CommandExecutionError(f"Invalid index: {command.to_index}")
                document.move_block(block.id, command.to_index)
                return f"Moved block {command.index} to {command.to_index}"
            case CreateHeadingBlock():
                return self._add(document, {"type": "heading", "content": command.text})
            case CreateCodeBlock():
                return self._add(
                    document,
                    {"type": "code", "content": command.code, "language": command.language, "filename": command.filename},
                )
            case CreateReactBlock():
                return self._add(document, {"type": "react", "content": command.code})
            case CreateMermaidBlock():
                return self._add(document, {"type": "mermaid", "content": command.code})
            case CreateMathBlock():
                return self._add(document, {"type": "math", "content": command.code})
            case CreateQuizBlock():
                return self._add(
                    document,
                    {
                        "type": "quiz",
                        "content": command.question,
                        "options": list(command.options),
                        "correct_answer": command.correct_answer,
                    },
                )
            case StreamHtmlBlock():
                return await self._stream_html_block(command, context)
            case _:
                assert_never(command)

    async def _stream_html_block(self, command: StreamHtmlBlock, context: ExecutionContext) -> str:
        if self.client is None:
            raise CommandExecutionError("Streaming blocks need an inference client")

        document = context.document
        block_id = document.add_block(
            {"type": "html", "content": stream_block_placeholder(command.style), "show_preview": True}
        )
        messages = [{"role": "user", "content": build_stream_block_prompt(command.prompt, command.style)}]

        def on_chunk(_delta: str, accumulated: str) -> None:
            html = extract_html(accumulated)
            if html:
                document.update_block(block_id, "content", html)

        try:
            result = await self.client.chat_stream(
                messages,
                model=context.model,
                on_chunk=on_chunk,
                cancel=context.cancel,
            )
        except TransportError as exc:
            document.update_block(block_id, "content", stream_block_failure(str(exc)))
            raise CommandExecutionError(str(exc)) from exc

        html = extract_html(result.text)
        if result.cancelled:
            if html:
                document.update_block(block_id, "content", html)
            return f"Stopped streaming after {len(result.text)} chars"
        if not html:
            document.update_block(block_id, "content", stream_block_failure("the model returned no HTML"))
            raise CommandExecutionError("The model returned no HTML")
        document.update_block(block_id, "content", html)
        return f"Streamed {command.style} block at position {document.index_of(block_id)}"
