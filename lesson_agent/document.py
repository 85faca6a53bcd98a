from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, fields
from typing import Any

from .utils import make_id, utc_now_iso

logger = logging.getLogger(__name__)

BLOCK_TYPES = frozenset({"text", "heading", "image", "video", "quiz", "html", "code", "react", "mermaid", "math"})
DEFAULT_TITLE = "Untitled Lesson"
DEFAULT_ICON = "📝"


@dataclass(slots=True)
class Block:
    id: str
    type: str
    content: str = ""
    caption: str | None = None
    options: list[str] | None = None
    correct_answer: int | None = None
    language: str | None = None
    filename: str | None = None
    show_preview: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


BLOCK_FIELDS = frozenset(f.name for f in fields(Block)) - {"id"}


def _new_block_id() -> str:
    return str(uuid.uuid4())


def _build_block(data: dict[str, Any], block_id: str) -> Block:
    block_type = str(data.get("type") or "text")
    if block_type not in BLOCK_TYPES:
        raise ValueError(f"Unknown block type: {block_type}")
    unknown = set(data) - BLOCK_FIELDS - {"id"}
    if unknown:
        raise ValueError(f"Unknown block fields: {', '.join(sorted(unknown))}")

    values = {key: value for key, value in data.items() if key in BLOCK_FIELDS}
    values["type"] = block_type
    values["content"] = str(values.get("content") or "")
    if block_type == "quiz":
        values.setdefault("options", ["", ""])
        values.setdefault("correct_answer", 0)
    elif block_type == "image":
        values.setdefault("caption", "")
    return Block(id=block_id, **values)


class Document:
    """In-memory lesson document: an ordered list of blocks plus title and icon.

    The document never holds fewer than one block.
    """

    def __init__(
        self,
        document_id: str,
        *,
        title: str = DEFAULT_TITLE,
        icon: str = DEFAULT_ICON,
        blocks: list[Block] | None = None,
    ) -> None:
        self.id = document_id
        self.title = title
        self.icon = icon
        self.created_at = utc_now_iso()
        self.updated_at = self.created_at
        self.revision = 0
        self._blocks: list[Block] = list(blocks or [])
        if not self._blocks:
            self._blocks.append(Block(id=_new_block_id(), type="text"))

    @property
    def blocks(self) -> list[Block]:
        return list(self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)

    def _touch(self) -> None:
        self.revision += 1
        self.updated_at = utc_now_iso()

    def index_of(self, block_id: str) -> int | None:
        for index, block in enumerate(self._blocks):
            if block.id == block_id:
                return index
        return None

    def get_block(self, block_id: str) -> Block | None:
        index = self.index_of(block_id)
        return None if index is None else self._blocks[index]

    def block_at(self, index: int) -> Block | None:
        if 0 <= index < len(self._blocks):
            return self._blocks[index]
        return None

    def add_block(self, data: dict[str, Any], *, after_id: str | None = None, block_id: str | None = None) -> str:
        new_id = block_id or _new_block_id()
        if self.index_of(new_id) is not None:
            raise ValueError(f"Block id already exists: {new_id}")
        block = _build_block(data, new_id)

        anchor = self.index_of(after_id) if after_id else None
        if anchor is None:
            self._blocks.append(block)
        else:
            self._blocks.insert(anchor + 1, block)
        self._touch()
        logger.debug("Block added document_id=%s block_id=%s type=%s", self.id, new_id, block.type)
        return new_id

    def update_block(self, block_id: str, field_name: str, value: Any) -> bool:
        if field_name not in BLOCK_FIELDS:
            raise ValueError(f"Unknown block field: {field_name}")
        if field_name == "type" and value not in BLOCK_TYPES:
            raise ValueError(f"Unknown block type: {value}")
        block = self.get_block(block_id)
        if block is None:
            logger.debug("Ignoring update for unknown block document_id=%s block_id=%s", self.id, block_id)
            return False
        setattr(block, field_name, value)
        self._touch()
        return True

    def delete_block(self, block_id: str) -> bool:
        index = self.index_of(block_id)
        if index is None:
            return False
        del self._blocks[index]
        if not self._blocks:
            self._blocks.append(Block(id=_new_block_id(), type="text"))
        self._touch()
        return True

    def move_block(self, block_id: str, new_index: int) -> bool:
        index = self.index_of(block_id)
        if index is None:
            return False
        block = self._blocks.pop(index)
        new_index = max(0, min(new_index, len(self._blocks)))
        self._blocks.insert(new_index, block)
        self._touch()
        return True

    def set_title(self, title: str) -> None:
        self.title = title
        self._touch()

    def set_icon(self, icon: str) -> None:
        self.icon = icon
        self._touch()

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "icon": self.icon,
            "revision": self.revision,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "blocks": [block.to_dict() for block in self._blocks],
        }


def starter_blocks() -> list[Block]:
    return [
        Block(id=_new_block_id(), type="heading", content="Welcome to your new lesson"),
        Block(id=_new_block_id(), type="text", content="Start writing here, or ask the assistant to build the lesson for you."),
    ]


class DocumentStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: dict[str, Document] = {}

    def create(self, *, title: str | None = None, icon: str | None = None) -> Document:
        document = Document(
            make_id("doc"),
            title=(title or "").strip() or DEFAULT_TITLE,
            icon=(icon or "").strip() or DEFAULT_ICON,
            blocks=starter_blocks(),
        )
        with self._lock:
            self._documents[document.id] = document
        logger.info("Document created document_id=%s title=%r", document.id, document.title)
        return document

    def get(self, document_id: str) -> Document | None:
        with self._lock:
            return self._documents.get(document_id)

    def list_documents(self) -> list[Document]:
        with self._lock:
            return list(self._documents.values())
