# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Documents -> Chunks. Pure transform, no I/O, no state.

Notes:
- split at Markdown headings (# .. ######), keeping the heading path
- sections split into paragraphs; tiny paragraphs merged with a neighbour
- long paragraphs split by sentences, overlong sentences by fixed windows

Chat:
- one chunk per turn; a tiny turn is folded into the preceding chunk
  when that chunk has the same role and ends at the previous turn
"""
import re

from .config import Config
from .documents import (
    Chunk, ChunkingResult, Conversation, Document, DocumentKind, Note,
    chat_chunk_id, note_chunk_id,
)

MAX_CHUNK_CHARS = 1500
TARGET_CHUNK_CHARS = 500
MIN_CHUNK_CHARS = 50
OVERLAP_CHARS = 50

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_PARAGRAPH_RE = re.compile(r"\n\s*\n+")
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])(?:\s+(?=[A-Z])|\s*\n+)")
_ROLE_UNSAFE_RE = re.compile(r"[^A-Za-z0-9-]+")


class Chunker:
    def __init__(
        self,
        max_chars: int = MAX_CHUNK_CHARS,
        target_chars: int = TARGET_CHUNK_CHARS,
        min_chars: int = MIN_CHUNK_CHARS,
        overlap: int = OVERLAP_CHARS,
    ):
        self.max_chars = max_chars
        self.target_chars = min(target_chars, max_chars)
        self.min_chars = min_chars
        self.overlap = overlap

    @classmethod
    def from_config(cls, config: Config) -> "Chunker":
        return cls(
            max_chars=config.chunk_max_chars,
            target_chars=config.chunk_target_chars,
            min_chars=config.chunk_min_chars,
            overlap=config.chunk_overlap,
        )

    def chunk(self, doc: Document) -> ChunkingResult:
        if isinstance(doc, Note):
            return self.chunk_note(doc)
        if isinstance(doc, Conversation):
            return self.chunk_conversation(doc)
        raise TypeError(f"Cannot chunk {type(doc).__name__}")

    # ── Notes ────────────────────────────────────────

    def chunk_note(self, note: Note) -> ChunkingResult:
        text = (note.content or "").strip()
        if not text:
            return ChunkingResult([])

        pieces: list[tuple[list[str], str]] = []
        if len(text) >= self.min_chars:
            for heading_path, section in self._split_sections(text):
                for piece in self._split_section(section):
                    pieces.append((heading_path, piece))
            pieces = self._merge_trailing(pieces)
        if not pieces:
            pieces = [([], text)]

        chunks = [
            Chunk(
                id=note_chunk_id(note.id, ordinal),
                parent_id=note.id,
                kind=DocumentKind.NOTE,
                content=piece,
                heading_path=list(heading_path),
                parent_title=note.title or "",
                tags=list(note.tags or []),
                source_url=note.url,
            )
            for ordinal, (heading_path, piece) in enumerate(pieces)
        ]
        return ChunkingResult(chunks)

    @staticmethod
    def _split_sections(text: str) -> list[tuple[list[str], str]]:
        """Split at headings, preserving the ancestor heading path."""
        sections: list[tuple[list[str], str]] = []
        heading_stack: list[tuple[int, str]] = []
        heading_path: list[str] = []
        current_lines: list[str] = []
        in_fence = False

        for line in text.split("\n"):
            if line.lstrip().startswith("```"):
                in_fence = not in_fence
            match = None if in_fence else _HEADING_RE.match(line)
            if match:
                sections.append((heading_path, "\n".join(current_lines).strip()))
                level = len(match.group(1))
                title = match.group(2).strip()
                heading_stack = [(l, t) for l, t in heading_stack if l < level]
                heading_stack.append((level, title))
                heading_path = [t for _, t in heading_stack]
                current_lines = []
            else:
                current_lines.append(line)

        sections.append((heading_path, "\n".join(current_lines).strip()))
        return [(path, body) for path, body in sections if body]

    def _split_section(self, section: str) -> list[str]:
        paragraphs = [p.strip() for p in _PARAGRAPH_RE.split(section) if p.strip()]
        pieces: list[str] = []
        carry = ""

        for paragraph in paragraphs:
            if carry:
                paragraph = f"{carry}\n\n{paragraph}"
                carry = ""
            if len(paragraph) < self.min_chars:
                if pieces and len(pieces[-1]) + len(paragraph) + 2 <= self.max_chars:
                    pieces[-1] = f"{pieces[-1]}\n\n{paragraph}"
                else:
                    carry = paragraph
                continue
            if len(paragraph) <= self.max_chars:
                pieces.append(paragraph)
            else:
                pieces.extend(self._split_long(paragraph))

        if carry:
            if pieces and len(pieces[-1]) + len(carry) + 2 <= self.max_chars:
                pieces[-1] = f"{pieces[-1]}\n\n{carry}"
            else:
                pieces.append(carry)
        return pieces

    def _split_long(self, paragraph: str) -> list[str]:
        pieces: list[str] = []
        buffer = ""
        for sentence in split_sentences(paragraph):
            if len(sentence) > self.target_chars:
                if buffer:
                    pieces.append(buffer)
                    buffer = ""
                pieces.extend(self._split_fixed(sentence))
                continue
            if not buffer:
                buffer = sentence
            elif (len(buffer) + 1 + len(sentence) <= self.target_chars
                  or len(buffer) < self.min_chars):
                buffer = f"{buffer} {sentence}"
            else:
                pieces.append(buffer)
                buffer = sentence
        if buffer:
            pieces.append(buffer)
        return pieces

    def _split_fixed(self, text: str) -> list[str]:
        step = max(1, self.target_chars - self.overlap)
        pieces: list[str] = []
        start = 0
        prev_end = 0

        while start < len(text):
            end = min(start + self.target_chars, len(text))
            piece = text[start:end].strip()
            if pieces and len(piece) < self.min_chars:
                pieces[-1] = (pieces[-1] + text[prev_end:end]).rstrip()
            elif piece:
                pieces.append(piece)
            prev_end = end
            if end == len(text):
                break
            start += step
        return pieces

    def _merge_trailing(
        self, pieces: list[tuple[list[str], str]],
    ) -> list[tuple[list[str], str]]:
        if len(pieces) < 2:
            return pieces
        last_path, last = pieces[-1]
        prev_path, prev = pieces[-2]
        if (len(last) < self.min_chars and last_path == prev_path
                and len(prev) + len(last) + 1 <= self.max_chars):
            return pieces[:-2] + [(prev_path, f"{prev}\n{last}")]
        return pieces

    # ── Chat ─────────────────────────────────────────

    def chunk_conversation(self, conversation: Conversation) -> ChunkingResult:
        chunks: list[Chunk] = []
        for index, turn in enumerate(conversation.turns):
            content = (turn.content or "").strip()
            if not content:
                continue
            last = chunks[-1] if chunks else None
            if (len(content) < self.min_chars and last is not None
                    and last.role == turn.role and last.turn_end == index - 1):
                last.content = f"{last.content}\n\n{content}"
                last.turn_end = index
                continue
            timestamp = int(turn.timestamp or 0)
            role = _ROLE_UNSAFE_RE.sub("-", turn.role) or "unknown"
            chunks.append(Chunk(
                id=chat_chunk_id(conversation.id, index, timestamp, role),
                parent_id=conversation.id,
                kind=DocumentKind.CHAT,
                content=content,
                turn_index=index,
                turn_end=index,
                role=turn.role,
                timestamp=timestamp,
                parent_title=conversation.title or "",
            ))
        return ChunkingResult(chunks)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_END_RE.split(text) if s.strip()]


# ── Text for embedding ───────────────────────────────

_MD_PATTERNS = [
    (re.compile(r"```[\s\S]*?```"), " "),
    (re.compile(r"<[^>]*>"), " "),
    (re.compile(r"!\[([^\]]*)\]\([^)]+\)"), r"\1"),
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),
    (re.compile(r"^#{1,6}\s+", re.M), ""),
    (re.compile(r"(\*\*|__|\*|_|~~)(.*?)\1"), r"\2"),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"^\s*>\s?", re.M), ""),
    (re.compile(r"^\s*[-*_]{3,}\s*$", re.M), ""),
    (re.compile(r"&[a-zA-Z#0-9]+;"), " "),
    (re.compile(r"\s\s+"), " "),
]


def clean_markdown(text: str) -> str:
    """Strip Markdown/HTML formatting, keep the words."""
    if not text:
        return ""
    cleaned = text
    for pattern, repl in _MD_PATTERNS:
        cleaned = pattern.sub(repl, cleaned)
    return cleaned.strip()


def embedding_text(chunk: Chunk) -> str:
    """Text sent to embedding providers: context line + cleaned content."""
    body = clean_markdown(chunk.content) or chunk.content
    context = [p for p in [chunk.parent_title, *chunk.heading_path] if p]
    if context:
        return f"{' > '.join(context)}\n\n{body}"
    return body
