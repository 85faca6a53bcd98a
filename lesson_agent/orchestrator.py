from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .cancellation import CancelToken
from .document import Document
from .executor import CommandExecutor, ExecutionContext
from .parser import EMPTY_REPLY_MESSAGE, parse_agent_reply
from .prompts import (
    ATTACHMENT_ONLY_DISPLAY,
    ATTACHMENT_ONLY_PROMPT,
    CHAT_SYSTEM_PROMPT,
    STATUS_RUNNING,
    STATUS_THINKING,
    build_agent_system_prompt,
    command_status_line,
    error_line,
    format_attachments,
)
from .runtime_config import RuntimeConfig, RuntimeConfigStore
from .session import Session, SessionManager
from .transport import ModelNotFoundError, OllamaClient, TransportError, is_vision_model
from .types import CommandResult, Turn, TurnOutcome
from .utils import make_id, sanitize_text_input, validate_chat_message

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CONTEXT_TURNS = 8


class TurnInProgressError(Exception):
    pass


def _history_messages(history: list[Turn]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for turn in history:
        content = turn.content
        if turn.role == "assistant" and turn.command_results:
            names = ", ".join(result.name for result in turn.command_results)
            content = f"{content}\n[Previously used commands: {names}]"
        messages.append({"role": turn.role, "content": content})
    return messages


def _user_text(user_input: str, *, has_attachments: bool, max_chars: int) -> tuple[str, str]:
    """Return the (displayed, sent) text for a submission.

    Attachments or images may be sent without any typed text.
    """
    if has_attachments and not sanitize_text_input(user_input):
        return ATTACHMENT_ONLY_DISPLAY, ATTACHMENT_ONLY_PROMPT
    message = validate_chat_message(user_input, max_chars=max_chars)
    return message, message


def _transport_error_line(exc: TransportError) -> str:
    if isinstance(exc, ModelNotFoundError):
        return f"Model error: {exc}"
    return error_line(str(exc))


class AgentOrchestrator:
    def __init__(
        self,
        *,
        client: OllamaClient,
        executor: CommandExecutor,
        sessions: SessionManager,
        runtime_config_store: RuntimeConfigStore | None = None,
        history_context_turns: int = DEFAULT_HISTORY_CONTEXT_TURNS,
        max_prompt_chars: int = 10000,
    ) -> None:
        self.client = client
        self.executor = executor
        self.sessions = sessions
        self.runtime_config_store = runtime_config_store
        self.history_context_turns = history_context_turns
        self.max_prompt_chars = max_prompt_chars
        self._tasks: dict[str, asyncio.Task[TurnOutcome]] = {}

    def _runtime_config(self) -> RuntimeConfig:
        if self.runtime_config_store is not None:
            return self.runtime_config_store.get()
        return RuntimeConfig()

    def is_running(self, document_id: str) -> bool:
        task = self._tasks.get(document_id)
        return task is not None and not task.done()

    def start_turn(
        self,
        *,
        session: Session,
        document: Document,
        user_input: str,
        images: list[str] | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> asyncio.Task[TurnOutcome]:
        if self.is_running(document.id) or session.busy:
            raise TurnInProgressError("A turn is already running for this document")
        _user_text(user_input, has_attachments=bool(images or attachments), max_chars=self.max_prompt_chars)

        task = asyncio.create_task(
            self.run_turn(session, document, user_input, images=images, attachments=attachments)
        )
        self._tasks[document.id] = task

        def _forget(done: asyncio.Task[TurnOutcome]) -> None:
            if self._tasks.get(document.id) is done:
                self._tasks.pop(document.id, None)

        task.add_done_callback(_forget)
        logger.info("Turn started document_id=%s model=%s", document.id, session.model)
        return task

    def cancel_turn(self, document_id: str) -> bool:
        session = self.sessions.get(document_id)
        if session is None or session.cancel_token is None:
            return False
        session.cancel_token.cancel("user_request")
        return True

    def _build_messages(
        self,
        *,
        document: Document,
        history: list[Turn],
        message: str,
        model: str,
        agent_mode: bool,
        images: list[str] | None,
        attachments: list[dict[str, Any]] | None,
    ) -> list[dict[str, Any]]:
        system_prompt = build_agent_system_prompt(document) if agent_mode else CHAT_SYSTEM_PROMPT
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(_history_messages(history))

        content = message
        attached = format_attachments(attachments or [])
        if attached:
            content = f"{attached}\n\n[USER REQUEST]\n{message}"
        user_message: dict[str, Any] = {"role": "user", "content": content}
        if images:
            if is_vision_model(model):
                user_message["images"] = list(images)
            else:
                logger.info("Dropping images for non-vision model=%s count=%s", model, len(images))
        messages.append(user_message)
        return messages

    async def run_turn(
        self,
        session: Session,
        document: Document,
        user_input: str,
        *,
        images: list[str] | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> TurnOutcome:
        """Drive one user turn: stream, parse, execute and record the reply."""
        display, message = _user_text(
            user_input,
            has_attachments=bool(images or attachments),
            max_chars=self.max_prompt_chars,
        )
        if session.cancel_token is not None:
            raise TurnInProgressError("A turn is already running for this document")

        runtime = self._runtime_config()
        model = session.model or runtime.selected_model
        history = session.history(self.history_context_turns)
        session.add_turn(
            "user",
            display,
            attachments=[str(item.get("name") or "document") for item in attachments or []],
        )
        token = CancelToken(label=document.id)
        session.cancel_token = token
        session.set_status(STATUS_THINKING)

        reply_turn_id = make_id("msg")
        reconciler = session.reconciler
        reconciler.channel("stream", lambda text: session.show_streaming(reply_turn_id, text))
        reconciler.channel("status", session.set_status)

        started = time.perf_counter()
        try:
            messages = self._build_messages(
                document=document,
                history=history,
                message=message,
                model=model,
                agent_mode=runtime.agent_mode,
                images=images,
                attachments=attachments,
            )
            outcome = await self._drive(
                session=session,
                document=document,
                messages=messages,
                model=model,
                agent_mode=runtime.agent_mode,
                token=token,
                reply_turn_id=reply_turn_id,
            )
        except TransportError as exc:
            logger.warning("Turn aborted by transport failure document_id=%s error=%s", document.id, exc)
            reconciler.cancel_all()
            session.clear_transient()
            turn = session.add_turn("assistant", _transport_error_line(exc))
            outcome = TurnOutcome(turn_id=turn.id, error=str(exc))
        except Exception as exc:
            logger.exception("Turn crashed document_id=%s", document.id)
            reconciler.cancel_all()
            session.clear_transient()
            turn = session.add_turn("assistant", error_line(str(exc) or exc.__class__.__name__))
            outcome = TurnOutcome(turn_id=turn.id, error=str(exc))
        finally:
            reconciler.cancel_all()
            session.clear_transient()
            session.cancel_token = None

        if not session.closed:
            self.sessions.save(session)
        logger.info(
            "Turn finished document_id=%s turn_id=%s commands=%s failures=%s cancelled=%s error=%s duration_ms=%s",
            document.id,
            outcome.turn_id,
            len(outcome.results),
            sum(1 for result in outcome.results if not result.success),
            outcome.cancelled,
            bool(outcome.error),
            int((time.perf_counter() - started) * 1000),
        )
        return outcome

    async def _drive(
        self,
        *,
        session: Session,
        document: Document,
        messages: list[dict[str, Any]],
        model: str,
        agent_mode: bool,
        token: CancelToken,
        reply_turn_id: str,
    ) -> TurnOutcome:
        reconciler = session.reconciler
        stream = await self.client.chat_stream(
            messages,
            model=model,
            on_chunk=lambda _delta, accumulated: reconciler.push("stream", accumulated),
            cancel=token,
        )
        if stream.cancelled:
            logger.info("Turn cancelled while streaming document_id=%s chars=%s", document.id, len(stream.text))
            return TurnOutcome(turn_id=None, text=stream.text, cancelled=True)

        reconciler.flush("stream")
        if not agent_mode:
            reconciler.cancel_all()
            session.clear_transient()
            turn = session.add_turn("assistant", stream.text.strip() or EMPTY_REPLY_MESSAGE, turn_id=reply_turn_id)
            return TurnOutcome(turn_id=turn.id, text=stream.text)

        reply = parse_agent_reply(stream.text)
        logger.info(
            "Reply parsed document_id=%s strategy=%s commands=%s",
            document.id,
            reply.strategy,
            len(reply.commands),
        )

        results: list[CommandResult] = []
        if reply.commands:
            session.clear_transient()
            session.set_status(STATUS_RUNNING)
            context = ExecutionContext(document=document, model=model, turn_id=reply_turn_id, cancel=token)
            results = await self.executor.execute(
                reply.commands,
                context,
                on_executed=lambda result: reconciler.push("status", command_status_line(result.name, result.success)),
            )

        reconciler.cancel_all()
        session.clear_transient()
        turn = session.add_turn(
            "assistant",
            reply.message,
            turn_id=reply_turn_id,
            command_results=results if reply.commands else None,
        )
        return TurnOutcome(
            turn_id=turn.id,
            text=stream.text,
            reply=reply,
            results=results,
            cancelled=token.cancelled,
        )
