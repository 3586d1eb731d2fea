"""AI card generation with streaming support and context from the stream."""

import asyncio
import logging
from collections.abc import AsyncIterator
from uuid import UUID

from anthropic import APIConnectionError, AsyncAnthropic, RateLimitError
from sqlalchemy.ext.asyncio import AsyncSession

from clarity.config import get_settings
from clarity.db.models import Card
from clarity.services.card_factory import CardFactory, card_factory
from clarity.services.ledger import PositionLedger, position_ledger

logger = logging.getLogger(__name__)
settings = get_settings()

SYSTEM_PROMPT = """You write cards for Clarity, a note-taking tool where knowledge lives in short, focused cards.

Write the card body in Markdown. Be concise and concrete. Do not repeat the request back. \
Reference other cards with [[Card Title]] when the context below mentions them by title."""

# Transient error types that warrant retrying
_RETRYABLE_ERRORS = (APIConnectionError, RateLimitError)


class CardGenerator:
    """Streams Claude output into an unsaved card."""

    def __init__(
        self,
        client: AsyncAnthropic | None = None,
        *,
        ledger: PositionLedger | None = None,
        cards: CardFactory | None = None,
    ):
        self._client = client
        self.ledger = ledger or position_ledger
        self.cards = cards or card_factory

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=settings.anthropic_api_key)
        return self._client

    async def build_context(self, db: AsyncSession, stream_id: UUID) -> str:
        """Markdown context from the stream's AI-context cards, within the character budget."""
        context_parts = []
        total_chars = 0
        max_total = settings.max_total_context_chars

        for _, card in await self.ledger.ai_context_cards(db, stream_id):
            if not card.content:
                continue
            card_text = card.content[: settings.card_context_max_chars]
            if len(card.content) > settings.card_context_max_chars:
                card_text += "\n\n[... content truncated ...]"
            part = f"# {card.title or 'Untitled card'}\n{card_text}\n"
            if total_chars + len(part) > max_total:
                context_parts.append("[... additional context omitted due to size limits ...]")
                break
            context_parts.append(part)
            total_chars += len(part)

        return "\n\n".join(context_parts) if context_parts else "No context available."

    async def stream_text(self, prompt: str, context: str) -> AsyncIterator[str]:
        """
        Stream Claude's response.

        Transient connection errors are retried with exponential backoff
        as long as no text has been produced yet.
        """
        system_prompt = f"{SYSTEM_PROMPT}\n\n---\n\n## Context\n\n{context}"
        max_attempts = 3

        for attempt in range(max_attempts):
            produced = False
            try:
                async with self.client.messages.stream(
                    model=settings.llm_model,
                    max_tokens=settings.llm_max_tokens,
                    system=system_prompt,
                    messages=[{"role": "user", "content": prompt}],
                ) as stream:
                    async for text in stream.text_stream:
                        produced = True
                        yield text
                return
            except _RETRYABLE_ERRORS as e:
                if produced or attempt == max_attempts - 1:
                    raise
                delay = 1.0 * (2 ** attempt)
                logger.warning(
                    "Anthropic stream transient error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1, max_attempts, delay, str(e),
                )
                await asyncio.sleep(delay)

    async def generate_into(
        self, db: AsyncSession, card: Card, stream_id: UUID, prompt: str
    ) -> AsyncIterator[str]:
        """
        Stream generated text into `card`, yielding each chunk.

        The accumulated text is saved when the stream ends, and also when
        it fails part-way so the card keeps what was received.
        """
        context = await self.build_context(db, stream_id)
        chunks: list[str] = []
        try:
            async for chunk in self.stream_text(prompt, context):
                chunks.append(chunk)
                yield chunk
        finally:
            if chunks:
                await self.cards.update_content(db, card.id, "".join(chunks))
                logger.info("Saved %d generated chars into card %s", sum(map(len, chunks)), card.id)
