"""Conversation shaping to fit a model's context window.

Keeps the leading system message, then fills the remaining budget with the
newest turns. The message that crosses the budget is cut down to a head and
tail fragment; anything older is dropped. Token counts are estimates (see
relay.app.core.tokenizer).
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.core.tokenizer import (
    CHARS_PER_TOKEN_ESTIMATE,
    content_to_text,
    estimate_message_tokens,
    estimate_tokens,
)

logger = get_logger(__name__)

TRUNCATION_MARKER = "\n\n[...truncated...]\n\n"

# Share of the kept characters taken from the start of a truncated message.
HEAD_FRACTION = 0.3

SUMMARY_PREFIX = "Previous conversation summary: "

# Auxiliary model call: prompt in, reply text out.
CompletionFn = Callable[[str], Awaitable[str]]

Message = Dict[str, Any]


@dataclass
class ShapedConversation:
    """Result of fitting a conversation into a token budget.

    Attributes:
        messages: Messages to send, system message first
        tokens_used: Estimated tokens of ``messages``
        tokens_remaining: Ceiling minus tokens_used
        was_truncated: Whether any message was dropped or cut
        original_count: Number of non-system input messages
        processed_count: Number of non-system output messages
        summarized: Whether older turns were replaced by a summary
    """
    messages: List[Message]
    tokens_used: int
    tokens_remaining: int
    was_truncated: bool
    original_count: int
    processed_count: int
    summarized: bool = False


@dataclass
class DocumentPrompt:
    """Prompt built from a (possibly large) document and a question."""
    messages: List[Message]
    chunks_used: int
    total_chunks: int
    scores: List[int] = field(default_factory=list)


def truncate_text(text: str, max_tokens: int) -> str:
    """Cut ``text`` to a head + marker + tail whose estimate fits ``max_tokens``.

    When the budget is too small for the marker, only the head is kept.
    """
    if estimate_tokens(text) <= max_tokens:
        return text

    max_chars = max(0, max_tokens) * CHARS_PER_TOKEN_ESTIMATE
    if max_chars <= len(TRUNCATION_MARKER):
        return text[:max_chars]

    available = max_chars - len(TRUNCATION_MARKER)
    head = int(available * HEAD_FRACTION)
    tail = available - head
    return f"{text[:head]}{TRUNCATION_MARKER}{text[len(text) - tail:]}"


class ContextBudgeter:
    """Fits chat histories, documents and summaries into a token ceiling.

    Usage:
        budgeter = ContextBudgeter(max_tokens=30000, max_messages=50)
        shaped = budgeter.shape(messages)
        payload["messages"] = shaped.messages
    """

    def __init__(
        self,
        max_tokens: Optional[int] = None,
        max_messages: Optional[int] = None,
        max_document_chunks: Optional[int] = None,
        scoring_concurrency: Optional[int] = None,
    ):
        self.max_tokens = max_tokens or settings.max_context_tokens
        self.max_messages = max_messages or settings.max_context_messages
        self.max_document_chunks = max_document_chunks or settings.max_document_chunks
        self.scoring_concurrency = (
            scoring_concurrency or settings.document_scoring_concurrency
        )

    def shape(
        self,
        messages: Sequence[Message],
        token_ceiling: Optional[int] = None,
    ) -> ShapedConversation:
        """Fit ``messages`` into ``token_ceiling`` estimated tokens.

        Args:
            messages: Chat messages, oldest first
            token_ceiling: Budget; defaults to ``max_tokens``. Non-positive
                values leave only an emptied system message, if any.

        Returns:
            ShapedConversation whose tokens_used never exceeds the ceiling
        """
        ceiling = self.max_tokens if token_ceiling is None else token_ceiling
        ceiling = max(0, ceiling)
        messages = list(messages or [])

        system: Optional[Message] = None
        turns = messages
        if messages and messages[0].get("role") == "system":
            system = messages[0]
            turns = messages[1:]

        shaped: List[Message] = []
        used = 0
        was_truncated = False

        if system is not None:
            cost = estimate_message_tokens(system)
            if cost > ceiling:
                text = content_to_text(system.get("content"))
                system = {**system, "content": truncate_text(text, ceiling)}
                cost = estimate_message_tokens(system)
                was_truncated = True
                logger.warning(f"System message exceeds context budget of {ceiling} tokens")
            used = cost

        recent = turns[-self.max_messages:] if turns else []
        if len(recent) < len(turns):
            was_truncated = True

        for message in reversed(recent):
            cost = estimate_message_tokens(message)
            if used + cost <= ceiling:
                shaped.insert(0, message)
                used += cost
                continue

            was_truncated = True
            remaining = ceiling - used
            content = message.get("content")
            # Multi-part content cannot be cut safely; drop it instead.
            if isinstance(content, str) and remaining > estimate_tokens(TRUNCATION_MARKER):
                cut = {**message, "content": truncate_text(content, remaining)}
                shaped.insert(0, cut)
                used += estimate_message_tokens(cut)
            break

        if system is not None:
            shaped.insert(0, system)

        processed_count = len(shaped) - (1 if system is not None else 0)
        if was_truncated:
            logger.debug(
                f"Shaped conversation from {len(turns)} to {processed_count} turns "
                f"({used}/{ceiling} tokens)"
            )

        return ShapedConversation(
            messages=shaped,
            tokens_used=used,
            tokens_remaining=ceiling - used,
            was_truncated=was_truncated,
            original_count=len(turns),
            processed_count=processed_count,
        )

    @staticmethod
    def chunk_text(content: str, max_chunk_size: int = 10000) -> List[str]:
        """Split ``content`` into chunks of at most ``max_chunk_size`` chars.

        A chunk ends at its last period when that period lies in the second
        half of the chunk.
        """
        if not content or len(content) <= max_chunk_size:
            return [content]

        chunks = []
        remaining = content
        while remaining:
            chunk = remaining[:max_chunk_size]
            if len(remaining) > max_chunk_size:
                last_period = chunk.rfind(".")
                if last_period > max_chunk_size * 0.5:
                    chunk = chunk[: last_period + 1]
            chunks.append(chunk)
            remaining = remaining[len(chunk):]
        return chunks

    async def process_document(
        self,
        text: str,
        query: str,
        scorer: CompletionFn,
        top_n: int = 5,
        chunk_size: int = 8000,
    ) -> DocumentPrompt:
        """Build a question prompt over a document that may not fit.

        Small documents are sent whole. Larger ones are chunked; each chunk
        is rated 0-10 for relevance by ``scorer`` and the ``top_n`` best
        chunks make up the prompt. At most ``max_document_chunks`` chunks are
        considered (one scorer call each, ``scoring_concurrency`` at a time);
        the rest of the document is ignored.
        """
        chunks = self.chunk_text(text, chunk_size)
        if len(chunks) == 1:
            return DocumentPrompt(
                messages=[{"role": "user", "content": f"Context:\n{text}\n\nQuestion: {query}"}],
                chunks_used=1,
                total_chunks=1,
            )

        total_chunks = len(chunks)
        if total_chunks > self.max_document_chunks:
            logger.warning(
                f"Document has {total_chunks} chunks, scoring the first "
                f"{self.max_document_chunks}"
            )
            chunks = chunks[: self.max_document_chunks]

        semaphore = asyncio.Semaphore(self.scoring_concurrency)

        async def score(chunk: str) -> int:
            async with semaphore:
                return await self._score_chunk(chunk, query, scorer)

        scores = await asyncio.gather(*(score(chunk) for chunk in chunks))
        # Stable sort keeps document order among equal scores.
        ranked = sorted(range(len(chunks)), key=lambda i: scores[i], reverse=True)
        top = [chunks[i] for i in ranked[:top_n]]

        content = (
            f"From the following document excerpts, answer: {query}\n\n"
            + "\n\n---\n\n".join(top)
        )
        return DocumentPrompt(
            messages=[{"role": "user", "content": content}],
            chunks_used=len(top),
            total_chunks=total_chunks,
            scores=list(scores),
        )

    @staticmethod
    async def _score_chunk(chunk: str, query: str, scorer: CompletionFn) -> int:
        prompt = (
            f'Rate relevance (0-10) of this text to the query: "{query}"\n\n'
            f"Text: {chunk[:500]}..."
        )
        try:
            reply = await scorer(prompt)
        except Exception as e:
            logger.debug(f"Chunk scoring failed, scoring 0: {e}")
            return 0

        match = re.search(r"\d+", reply or "")
        if not match:
            return 0
        return min(10, int(match.group()))

    async def summarize(
        self,
        messages: Sequence[Message],
        summarizer: Optional[CompletionFn] = None,
        keep_recent: int = 10,
        token_ceiling: Optional[int] = None,
    ) -> ShapedConversation:
        """Condense older turns into a summary note.

        The last ``keep_recent`` turns are kept verbatim; older turns are
        replaced by a system note produced by ``summarizer``. Without a
        summarizer, or if it fails, this is plain ``shape``.
        """
        messages = list(messages or [])
        if summarizer is None:
            return self.shape(messages, token_ceiling)

        system: Optional[Message] = None
        turns = messages
        if messages and messages[0].get("role") == "system":
            system = messages[0]
            turns = messages[1:]

        if len(turns) <= keep_recent:
            return self.shape(messages, token_ceiling)

        split = len(turns) - keep_recent
        older, recent = turns[:split], turns[split:]
        transcript = "\n".join(
            f"{m.get('role', 'user')}: {content_to_text(m.get('content'))}" for m in older
        )
        prompt = (
            "Summarize the following conversation in 2-3 sentences, capturing "
            f"key points and decisions:\n\n{transcript}"
        )

        try:
            summary = (await summarizer(prompt) or "").strip()
        except Exception as e:
            logger.warning(f"Context summarization failed: {e}")
            summary = ""

        if not summary:
            return self.shape(messages, token_ceiling)

        # The summary rides along with the system prompt so shaping pins it.
        note = f"{SUMMARY_PREFIX}{summary}"
        if system is not None:
            system_text = content_to_text(system.get("content"))
            head = {**system, "content": f"{system_text}\n\n{note}"}
        else:
            head = {"role": "system", "content": note}

        shaped = self.shape([head, *recent], token_ceiling)
        shaped.was_truncated = True
        shaped.original_count = len(turns)
        shaped.summarized = True
        return shaped
