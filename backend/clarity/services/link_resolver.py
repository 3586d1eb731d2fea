"""
[[Title]] link parsing and resolution.

A card's outgoing links are rebuilt from its content every time it is
resolved. Targets are matched by exact title among the brain's active
cards, saved cards taking precedence over file cards.
"""

import logging
import re
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from clarity.db.models import Card, CardLink, CardType
from clarity.db.session import atomic
from clarity.exceptions import NotFoundError

logger = logging.getLogger(__name__)

LINK_PATTERN = re.compile(r"\[\[([^\[\]\n]{1,200})\]\]")


@dataclass
class ParsedLink:
    text: str
    position: int


@dataclass
class LinkedCard:
    card: Card
    link_text: str
    position: int


def parse_links(content: str) -> list[ParsedLink]:
    """Every [[...]] reference in order of appearance, with its character offset."""
    links = []
    for match in LINK_PATTERN.finditer(content or ""):
        text = match.group(1).strip()
        if text:
            links.append(ParsedLink(text=text, position=match.start()))
    return links


class LinkResolver:
    async def _resolve_titles(self, db: AsyncSession, brain_id: UUID, titles: set[str]) -> dict[str, UUID]:
        if not titles:
            return {}
        result = await db.execute(
            select(Card.id, Card.title, Card.card_type)
            .where(
                Card.brain_id == brain_id,
                Card.title.in_(titles),
                Card.is_active.is_(True),
            )
            .order_by(Card.created_at)
        )
        resolved: dict[str, UUID] = {}
        for card_id, title, card_type in result.all():
            if card_type == CardType.SAVED.value or title not in resolved:
                resolved[title] = card_id
        return resolved

    async def update_card_links(self, db: AsyncSession, card_id: UUID) -> dict[str, int]:
        """Rebuild a card's outgoing links. Returns found/resolved/broken counts."""
        card = await db.get(Card, card_id)
        if card is None or not card.is_active:
            raise NotFoundError(f"Card {card_id} not found")

        parsed = parse_links(card.content)
        async with atomic(db):
            await db.execute(delete(CardLink).where(CardLink.source_card_id == card_id))
            targets = await self._resolve_titles(db, card.brain_id, {link.text for link in parsed})
            for link in parsed:
                target_id = targets.get(link.text)
                db.add(
                    CardLink(
                        source_card_id=card_id,
                        target_card_id=target_id,
                        link_text=link.text,
                        position_in_source=link.position,
                        is_valid=target_id is not None,
                    )
                )

        resolved = sum(1 for link in parsed if link.text in targets)
        summary = {
            "links_found": len(parsed),
            "links_resolved": resolved,
            "broken_links": len(parsed) - resolved,
        }
        logger.info("Resolved links for card %s: %s", card_id, summary)
        return summary

    async def forward_links(self, db: AsyncSession, card_id: UUID) -> list[LinkedCard]:
        result = await db.execute(
            select(Card, CardLink.link_text, CardLink.position_in_source)
            .join(CardLink, CardLink.target_card_id == Card.id)
            .where(
                CardLink.source_card_id == card_id,
                CardLink.is_valid.is_(True),
                Card.is_active.is_(True),
            )
            .order_by(CardLink.position_in_source)
        )
        return [LinkedCard(card, text, position) for card, text, position in result.all()]

    async def backlinks(self, db: AsyncSession, card_id: UUID) -> list[LinkedCard]:
        result = await db.execute(
            select(Card, CardLink.link_text, CardLink.position_in_source)
            .join(CardLink, CardLink.source_card_id == Card.id)
            .where(
                CardLink.target_card_id == card_id,
                CardLink.is_valid.is_(True),
                Card.is_active.is_(True),
            )
            .order_by(Card.title)
        )
        return [LinkedCard(card, text, position) for card, text, position in result.all()]


# Singleton instance
link_resolver = LinkResolver()
