"""
Append-only system log used by admins to review what happened and who did it.

Entries are written after the action they describe has committed, so a failed
write is logged and dropped rather than failing an action that already took
effect.
"""

from __future__ import annotations

import logging
from typing import Optional

from campus_assist.db import EntityStore, SystemLogRecord
from campus_assist.errors import StoreUnavailable
from campus_assist.policy import ActorContext

logger = logging.getLogger(__name__)


def record(
    store: EntityStore,
    actor: Optional[ActorContext],
    log_type: str,
    message: str,
) -> Optional[SystemLogRecord]:
    logger.info("%s: %s", log_type, message)
    try:
        return store.add_system_log(
            log_type,
            message,
            actor_id=actor.actor_id if actor else None,
            actor_role=actor.role.value if actor else None,
        )
    except StoreUnavailable:
        logger.exception("Failed to write system log %r", log_type)
        return None
