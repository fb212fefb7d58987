"""
Direct messages between actors. Only the receiver may mark a message read.
"""

from __future__ import annotations

import logging
from typing import Optional

from campus_assist.db import EntityStore, MessageRecord
from campus_assist.errors import NotFound, PermissionDenied, ValidationError
from campus_assist.events import (
    CHANGE_ADDED,
    CHANGE_CHANGED,
    ChangeEvent,
    EventQueue,
    actor_topic,
    publish_quietly,
)
from campus_assist.policy import ActorContext, require
from shared.constants import MAX_MESSAGE_LENGTH
from shared.types import Action, EntityKind

logger = logging.getLogger(__name__)


class MessagingService:
    def __init__(self, store: EntityStore, events: Optional[EventQueue] = None):
        self.store = store
        self.events = events

    def _announce(self, record: MessageRecord, change: str, actor: ActorContext) -> None:
        event = ChangeEvent(
            entity_kind=EntityKind.MESSAGE.value,
            entity_id=record.message_id,
            change=change,
            actor_id=actor.actor_id,
        )
        publish_quietly(
            self.events,
            [actor_topic(record.receiver_id), actor_topic(record.sender_id)],
            event,
        )

    def send(self, actor: ActorContext, receiver_id: str, content: str) -> MessageRecord:
        require(actor, EntityKind.MESSAGE, Action.CREATE)
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty.")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message must be at most {MAX_MESSAGE_LENGTH} characters."
            )
        if receiver_id == actor.actor_id:
            raise ValidationError("You cannot send a message to yourself.")
        if not self.store.get_actor(receiver_id):
            raise NotFound("The recipient could not be found.")
        record = self.store.create_message(actor.actor_id, receiver_id, text)
        logger.info("Message %s from %s to %s", record.message_id, actor.actor_id, receiver_id)
        self._announce(record, CHANGE_ADDED, actor)
        return record

    def conversation(self, actor: ActorContext, other_id: str) -> list[MessageRecord]:
        require(actor, EntityKind.MESSAGE, Action.READ_OWN)
        return self.store.list_conversation(actor.actor_id, other_id)

    def inbox(self, actor: ActorContext, unread_only: bool = False) -> list[MessageRecord]:
        require(actor, EntityKind.MESSAGE, Action.READ_OWN)
        return self.store.list_inbox(actor.actor_id, unread_only=unread_only)

    def mark_read(self, actor: ActorContext, message_id: str) -> MessageRecord:
        require(actor, EntityKind.MESSAGE, Action.UPDATE)
        message = self.store.get_message(message_id)
        if not message:
            raise NotFound("The message could not be found.")
        if message.receiver_id != actor.actor_id:
            raise PermissionDenied("Only the recipient can mark a message as read.")
        updated = self.store.mark_message_read(message_id)
        if updated is None:
            raise NotFound("The message could not be found.")
        if not message.read:
            self._announce(updated, CHANGE_CHANGED, actor)
        return updated
