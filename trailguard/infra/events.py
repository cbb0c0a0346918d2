from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from trailguard.domain.models import EventEnvelope, EventRecord
from trailguard.infra.db import engine

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]

WILDCARD = "*"


def _topics_for(event_type: str) -> list[str]:
    """``incident.sos`` is delivered to ``incident.sos``, ``incident.*`` and ``*``."""
    topics = [event_type]
    domain, _, _ = event_type.partition(".")
    if domain != event_type:
        topics.append(f"{domain}.{WILDCARD}")
    topics.append(WILDCARD)
    return topics


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: EventHandler) -> None:
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def _persist(self, event: EventEnvelope, session: Session) -> None:
        session.add(
            EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                ts=event.ts,
                actor_id=event.actor_id,
                payload=event.payload,
            )
        )

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        """Store the event, then hand it to subscribers.

        With an explicit session the caller owns the commit; otherwise the
        record is written in a short session of its own.
        """
        if session is not None:
            self._persist(event, session)
        else:
            with Session(engine) as own_session:
                self._persist(event, own_session)
                own_session.commit()

        logger.debug("event %s published: %s", event.event_type, event.event_id)
        for topic in _topics_for(event.event_type):
            for handler in list(self._subscribers.get(topic, [])):
                handler(event)

    def publish_dict(
        self,
        event_type: str,
        payload: dict[str, Any],
        actor_id: str | None = None,
        session: Session | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(event_type=event_type, actor_id=actor_id, payload=payload)
        self.publish(event, session=session)
        return event


event_bus = EventBus()
