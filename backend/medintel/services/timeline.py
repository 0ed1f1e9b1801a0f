"""Timeline synthesis: per-document event extraction merged into one chronology."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Sequence

from medintel.agents.oracle import Oracle, OracleError
from medintel.agents.parsing import parse_events
from medintel.config import settings
from medintel.models.clinical import EventType, TimelineDay, TimelineEvent
from medintel.models.documents import Document, DocumentCategory

logger = logging.getLogger(__name__)

CATEGORY_EVENT_TYPES: dict[DocumentCategory, EventType] = {
    "prescription": "medication",
    "lab_report": "lab_result",
    "test_report": "lab_result",
}


def event_type_for(category: DocumentCategory) -> EventType:
    return CATEGORY_EVENT_TYPES.get(category, "visit")


def fallback_event(document: Document) -> TimelineEvent:
    """The single event emitted when extraction is unavailable."""
    return TimelineEvent(
        date=document.date,
        description=document.summary.strip() or f"Document: {document.name}",
        event_type=event_type_for(document.category),
        doctor=document.doctor,
        hospital=document.hospital,
        document_id=document.id,
    )


def merge_events(groups: Sequence[Sequence[TimelineEvent]]) -> list[TimelineEvent]:
    """Union event groups and sort ascending by date (stable)."""
    events = list(itertools.chain.from_iterable(groups))
    return sorted(events, key=lambda event: event.date)


def group_by_date(events: Sequence[TimelineEvent]) -> list[TimelineDay]:
    """Bucket a sorted timeline by calendar date for display."""
    ordered = sorted(events, key=lambda event: event.date)
    return [
        TimelineDay(date=day, events=list(day_events))
        for day, day_events in itertools.groupby(ordered, key=lambda event: event.date)
    ]


class TimelineSynthesizer:
    """Builds a chronological timeline from a set of documents."""

    def __init__(self, oracle: Oracle, timeout: float | None = None) -> None:
        self.oracle = oracle
        self.timeout = timeout if timeout is not None else settings.oracle_timeout_seconds

    async def extract_events(self, document: Document) -> list[TimelineEvent]:
        """Oracle-extracted events for one document, or its single fallback event."""
        try:
            async with asyncio.timeout(self.timeout):
                raw = await self.oracle.generate_events(document.text, document.date)
            events = parse_events(raw, document)
        except OracleError as e:
            logger.warning(
                "Event extraction failed for %r (%s: %s), using fallback event",
                document.id,
                e.code,
                e.message,
            )
            return [fallback_event(document)]
        except TimeoutError:
            logger.warning(
                "Event extraction timed out for %r, using fallback event", document.id
            )
            return [fallback_event(document)]
        except Exception:
            # One document's failure must not abort the batch.
            logger.exception("Unexpected event extraction error for %r", document.id)
            return [fallback_event(document)]

        logger.debug("Extracted %d events from %r", len(events), document.id)
        return events

    async def build(self, documents: Sequence[Document]) -> list[TimelineEvent]:
        """Extract events from every document concurrently and merge them."""
        logger.info("Building timeline from %d documents", len(documents))
        groups = await asyncio.gather(*(self.extract_events(doc) for doc in documents))
        timeline = merge_events(groups)
        logger.info("Timeline has %d events", len(timeline))
        return timeline
