# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Documents (owned by the host's note / chat stores) and the chunks
the engine derives from them.

Chunk IDs are position-based and deterministic:
  notes: notechunk_<parentId>_<ordinal>
  chat:  chatchunk_<parentId>_<turnIndex>_<timestamp>_<role>
"""
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class DocumentKind(str, Enum):
    NOTE = "note"
    CHAT = "chat"


@dataclass
class Note:
    id: str
    content: str
    title: str = ""
    url: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    updated_at: Optional[int] = None

    kind = DocumentKind.NOTE


@dataclass
class ChatTurn:
    role: str
    content: str
    timestamp: int = 0


@dataclass
class Conversation:
    id: str
    title: str = ""
    turns: list[ChatTurn] = field(default_factory=list)
    updated_at: Optional[int] = None

    kind = DocumentKind.CHAT


Document = Union[Note, Conversation]


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()[:16]


@dataclass
class Chunk:
    id: str
    parent_id: str
    kind: DocumentKind
    content: str
    heading_path: list[str] = field(default_factory=list)
    turn_index: Optional[int] = None
    turn_end: Optional[int] = None
    role: Optional[str] = None
    timestamp: Optional[int] = None
    parent_title: str = ""
    tags: list[str] = field(default_factory=list)
    source_url: Optional[str] = None

    @property
    def char_count(self) -> int:
        return len(self.content)

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "kind": self.kind.value,
            "content": self.content,
            "char_count": self.char_count,
            "heading_path": list(self.heading_path),
            "turn_index": self.turn_index,
            "turn_end": self.turn_end,
            "role": self.role,
            "timestamp": self.timestamp,
            "parent_title": self.parent_title,
            "tags": list(self.tags),
            "source_url": self.source_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Chunk":
        return cls(
            id=data["id"],
            parent_id=data["parent_id"],
            kind=DocumentKind(data["kind"]),
            content=data["content"],
            heading_path=list(data.get("heading_path") or []),
            turn_index=data.get("turn_index"),
            turn_end=data.get("turn_end"),
            role=data.get("role"),
            timestamp=data.get("timestamp"),
            parent_title=data.get("parent_title", ""),
            tags=list(data.get("tags") or []),
            source_url=data.get("source_url"),
        )


@dataclass
class ChunkingResult:
    chunks: list[Chunk]

    @property
    def chunk_ids(self) -> list[str]:
        return [c.id for c in self.chunks]


def note_chunk_id(parent_id: str, ordinal: int) -> str:
    return f"notechunk_{parent_id}_{ordinal}"


def chat_chunk_id(parent_id: str, turn_index: int, timestamp: int, role: str) -> str:
    return f"chatchunk_{parent_id}_{turn_index}_{timestamp}_{role}"


def parse_chunk_id(chunk_id: str) -> Optional[dict]:
    """Recover parent id and position from a chunk id.

    Parent ids may contain underscores, so positional parts are taken
    from the end.
    """
    parts = chunk_id.split("_")
    if chunk_id.startswith("notechunk_") and len(parts) >= 3:
        try:
            ordinal = int(parts[-1])
        except ValueError:
            return None
        return {
            "kind": DocumentKind.NOTE,
            "parent_id": "_".join(parts[1:-1]),
            "ordinal": ordinal,
        }
    if chunk_id.startswith("chatchunk_") and len(parts) >= 5:
        try:
            turn_index = int(parts[-3])
            timestamp = int(parts[-2])
        except ValueError:
            return None
        return {
            "kind": DocumentKind.CHAT,
            "parent_id": "_".join(parts[1:-3]),
            "turn_index": turn_index,
            "timestamp": timestamp,
            "role": parts[-1],
        }
    return None


def parent_of(chunk_id: str) -> Optional[str]:
    parsed = parse_chunk_id(chunk_id)
    return parsed["parent_id"] if parsed else None
