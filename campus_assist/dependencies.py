"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from campus_assist.assignments import AssignmentService
from campus_assist.auth import (
    GoTrueIdentityProvider,
    IdentityProvider,
    LocalIdentityProvider,
)
from campus_assist.config import get_settings
from campus_assist.db import EntityStore, InMemoryEntityStore, PostgresEntityStore
from campus_assist.errors import AuthenticationFailed
from campus_assist.events import EventQueue, InMemoryEventQueue, RedisEventQueue
from campus_assist.lifecycle import LifecycleController
from campus_assist.messaging import MessagingService
from campus_assist.policy import ActorContext
from campus_assist.registration import materialize_actor
from campus_assist.service_requests import ServiceRequestService
from campus_assist.storage import InMemoryStorageClient, S3StorageClient, StorageClient
from campus_assist.verification import VerificationService

_entity_store: EntityStore | None = None
_storage_client: StorageClient | None = None
_event_queue: EventQueue | None = None
_identity_provider: IdentityProvider | None = None

bearer_scheme = HTTPBearer(auto_error=False)


def get_entity_store() -> EntityStore:
    """
    Return a singleton store so state persists across requests.
    """
    global _entity_store
    if _entity_store:
        return _entity_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _entity_store = InMemoryEntityStore()
    else:
        _entity_store = PostgresEntityStore(settings.database_url)
    return _entity_store


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.storage_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.storage_bucket,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
        )
    return _storage_client


def get_event_queue() -> EventQueue:
    """
    Return a singleton queue used to push change events to consumers.
    """
    global _event_queue
    if _event_queue:
        return _event_queue

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _event_queue = RedisEventQueue(
            url=settings.redis_url,
            prefix=settings.redis_event_prefix,
            max_length=settings.event_topic_max_length,
        )
    else:
        _event_queue = InMemoryEventQueue(max_length=settings.event_topic_max_length)
    return _event_queue


def get_identity_provider() -> IdentityProvider:
    global _identity_provider
    if _identity_provider:
        return _identity_provider

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.auth_url:
        _identity_provider = LocalIdentityProvider(
            jwt_secret=settings.jwt_secret,
            audience=settings.jwt_audience,
            ttl_seconds=settings.access_token_ttl_seconds,
        )
    else:
        _identity_provider = GoTrueIdentityProvider(
            base_url=settings.auth_url,
            api_key=settings.auth_api_key or "",
            jwt_secret=settings.jwt_secret,
            audience=settings.jwt_audience,
        )
    return _identity_provider


def get_lifecycle(
    store: EntityStore = Depends(get_entity_store),
    events: EventQueue = Depends(get_event_queue),
) -> LifecycleController:
    return LifecycleController(store, events)


def get_request_service(
    store: EntityStore = Depends(get_entity_store),
    lifecycle: LifecycleController = Depends(get_lifecycle),
) -> ServiceRequestService:
    return ServiceRequestService(store, lifecycle)


def get_assignment_service(
    store: EntityStore = Depends(get_entity_store),
    events: EventQueue = Depends(get_event_queue),
) -> AssignmentService:
    return AssignmentService(store, events)


def get_messaging_service(
    store: EntityStore = Depends(get_entity_store),
    events: EventQueue = Depends(get_event_queue),
) -> MessagingService:
    return MessagingService(store, events)


def get_verification_service(
    store: EntityStore = Depends(get_entity_store),
    lifecycle: LifecycleController = Depends(get_lifecycle),
    events: EventQueue = Depends(get_event_queue),
) -> VerificationService:
    return VerificationService(
        store,
        lifecycle,
        ttl_seconds=get_settings().verification_code_ttl_seconds,
        events=events,
    )


def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    identity: IdentityProvider = Depends(get_identity_provider),
    store: EntityStore = Depends(get_entity_store),
) -> ActorContext:
    """Resolve the bearer token to an ActorContext, creating the Actor on first sight."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationFailed("Please sign in to continue.")
    auth_user = identity.verify(credentials.credentials)
    actor = store.get_actor(auth_user.user_id) or materialize_actor(store, auth_user)
    return ActorContext(
        actor_id=actor.actor_id,
        role=actor.role,
        display_name=actor.full_name or actor.email,
    )
