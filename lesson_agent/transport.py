from __future__ import annotations

import asyncio
import codecs
import http.client
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib import error, request

from .cancellation import CancelToken
from .runtime_config import RuntimeConfig, RuntimeConfigStore
from .types import StreamResult

logger = logging.getLogger(__name__)

STREAM_READ_SIZE = 8192
MAX_ERROR_DETAIL_CHARS = 300
VISION_MODEL_NAMES = ("qwen3-vl", "llava", "bakllava", "moondream", "llama3.2-vision", "minicpm-v")

ChunkCallback = Callable[[str, str], None]


class TransportError(Exception):
    pass


class BackendConnectionError(TransportError):
    pass


class ModelNotFoundError(TransportError):
    def __init__(self, model: str):
        super().__init__(f"Model not found. Try: ollama pull {model}")
        self.model = model


class BackendResponseError(TransportError):
    def __init__(self, status: int, detail: str = ""):
        message = f"Backend error ({status})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status = status


def is_vision_model(model: str) -> bool:
    lowered = model.lower()
    if any(name in lowered for name in VISION_MODEL_NAMES):
        return True
    return "vision" in lowered or "-vl" in lowered


def _parse_line(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("Skipping unparseable stream line chars=%s", len(stripped))
        return None
    return event if isinstance(event, dict) else None


def _content_delta(event: dict[str, Any]) -> str:
    message = event.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
    return ""


class ChatStreamDecoder:
    """Incremental NDJSON decoder for chat stream bodies.

    Multi-byte characters and lines may be split across reads; the trailing
    fragment is held back until its newline arrives or the stream closes.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        self._buffer += self._decoder.decode(data)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[dict[str, Any]] = []
        for line in lines:
            event = _parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> list[dict[str, Any]]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        event = _parse_line(tail)
        return [event] if event is not None else []


async def read_chat_stream(
    read_chunk: Callable[[], Awaitable[bytes]],
    *,
    on_chunk: ChunkCallback | None = None,
    cancel: CancelToken | None = None,
) -> StreamResult:
    """Drain a chat stream, reporting each content delta with the text so far.

    ``read_chunk`` returns an empty bytes object at end of stream. When the
    cancel token is set the read loop stops and the partial text is returned.
    """
    decoder = ChatStreamDecoder()
    accumulated = ""

    def consume(events: list[dict[str, Any]]) -> bool:
        nonlocal accumulated
        for event in events:
            delta = _content_delta(event)
            if delta:
                accumulated += delta
                if on_chunk is not None:
                    on_chunk(delta, accumulated)
            if event.get("done") is True:
                return True
        return False

    while True:
        if cancel is not None and cancel.cancelled:
            return StreamResult(text=accumulated, cancelled=True)
        data = await read_chunk()
        if cancel is not None and cancel.cancelled:
            return StreamResult(text=accumulated, cancelled=True)
        if not data:
            break
        if consume(decoder.feed(data)):
            return StreamResult(text=accumulated, done=True)

    done = consume(decoder.close())
    return StreamResult(text=accumulated, done=done)


def _read_error_detail(exc: error.HTTPError) -> str:
    try:
        raw = exc.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict) and isinstance(parsed.get("error"), str):
        raw = parsed["error"]
    return raw.strip()[:MAX_ERROR_DETAIL_CHARS]


class OllamaClient:
    def __init__(self, runtime_config_store: RuntimeConfigStore | None = None, *, runtime: RuntimeConfig | None = None):
        self.runtime_config_store = runtime_config_store
        self._runtime = runtime or RuntimeConfig()

    def _runtime_config(self) -> RuntimeConfig:
        if self.runtime_config_store is not None:
            return self.runtime_config_store.get()
        return self._runtime

    def _open(self, req: request.Request, *, runtime: RuntimeConfig, model: str | None) -> http.client.HTTPResponse:
        try:
            return request.urlopen(req, timeout=runtime.ollama_timeout_seconds)
        except error.HTTPError as exc:
            detail = _read_error_detail(exc)
            logger.warning("Backend request failed status=%s url=%s detail=%s", exc.code, req.full_url, detail)
            if exc.code == 404 and model:
                raise ModelNotFoundError(model) from exc
            if exc.code >= 500 and not detail:
                detail = "Ollama server error. Check if Ollama is running properly."
            raise BackendResponseError(exc.code, detail) from exc
        except error.URLError as exc:
            logger.warning("Backend unreachable url=%s reason=%s", req.full_url, exc.reason)
            raise BackendConnectionError(
                f"Can't reach Ollama at {runtime.ollama_base_url}. Make sure it is running."
            ) from exc
        except TimeoutError as exc:
            raise BackendConnectionError("Request timed out: the backend is not responding") from exc
        except OSError as exc:
            raise BackendConnectionError(f"Backend connection failed: {exc}") from exc

    async def chat_stream(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> StreamResult:
        runtime = self._runtime_config()
        model_name = model or runtime.selected_model
        body = json.dumps({"model": model_name, "messages": messages, "stream": True}).encode("utf-8")
        url = f"{runtime.ollama_base_url.rstrip('/')}/api/chat"
        req = request.Request(url, data=body, headers={"Content-Type": "application/json"}, method="POST")

        response = await asyncio.to_thread(self._open, req, runtime=runtime, model=model_name)

        async def read_chunk() -> bytes:
            return await asyncio.to_thread(response.read1, STREAM_READ_SIZE)

        try:
            result = await read_chat_stream(read_chunk, on_chunk=on_chunk, cancel=cancel)
        except (OSError, http.client.HTTPException) as exc:
            raise BackendConnectionError(f"Stream interrupted: {exc}") from exc
        finally:
            response.close()

        logger.info(
            "Chat stream finished model=%s chars=%s done=%s cancelled=%s",
            model_name,
            len(result.text),
            result.done,
            result.cancelled,
        )
        return result

    def _get_json(self, path: str) -> dict[str, Any]:
        runtime = self._runtime_config()
        url = f"{runtime.ollama_base_url.rstrip('/')}{path}"
        req = request.Request(url, method="GET")
        with self._open(req, runtime=runtime, model=None) as response:
            raw = response.read().decode("utf-8", errors="replace")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BackendResponseError(200, "response was not JSON") from exc
        return parsed if isinstance(parsed, dict) else {}

    async def list_models(self) -> list[dict[str, Any]]:
        payload = await asyncio.to_thread(self._get_json, "/api/tags")
        models: list[dict[str, Any]] = []
        for item in payload.get("models") or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            name = str(item["name"])
            models.append(
                {
                    "name": name,
                    "size": item.get("size"),
                    "modified_at": item.get("modified_at"),
                    "vision": is_vision_model(name),
                }
            )
        return models

    async def health_check(self) -> dict[str, Any]:
        base_url = self._runtime_config().ollama_base_url
        try:
            models = await self.list_models()
        except TransportError as exc:
            return {"connected": False, "base_url": base_url, "error": str(exc)}
        return {"connected": True, "base_url": base_url, "models": [model["name"] for model in models]}
