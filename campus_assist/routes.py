"""
HTTP routes for the campus assistance API.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, Query, UploadFile
from fastapi.concurrency import run_in_threadpool

from campus_assist.assignments import AssignmentService
from campus_assist.auth import IdentityProvider, auth_user_from_payload
from campus_assist.config import get_settings
from campus_assist.db import EntityStore, ServiceRequestRecord
from campus_assist.dependencies import (
    get_assignment_service,
    get_current_actor,
    get_entity_store,
    get_event_queue,
    get_identity_provider,
    get_messaging_service,
    get_request_service,
    get_storage_client,
    get_verification_service,
)
from campus_assist.errors import AuthenticationFailed, NotFound
from campus_assist.events import EventQueue, actor_topic
from campus_assist.messaging import MessagingService
from campus_assist.notifier import QueueChangeFeed
from campus_assist.policy import ActorContext, require
from campus_assist.registration import (
    RawUpload,
    RegistrationForm,
    materialize_actor,
    register_user,
)
from campus_assist.schemas import (
    ActorResponse,
    AssignmentCreateRequest,
    AssignmentResponse,
    ChangeEventResponse,
    ChangesResponse,
    ClientConfigResponse,
    ComplaintCreateRequest,
    ConfirmHelpRequest,
    DisabilityServicesResponse,
    DriverStatsResponse,
    FollowUpRequest,
    GadgetLoanCreateRequest,
    HelpConfirmationCreateRequest,
    HookResponse,
    IssueCodeRequest,
    IssuedCodeResponse,
    ListActorsResponse,
    ListAssignmentsResponse,
    ListEventsResponse,
    ListMessagesResponse,
    ListRequestsResponse,
    ListSystemLogsResponse,
    ListVerificationCodesResponse,
    LocationPayload,
    MessageCreateRequest,
    MessageResponse,
    ResolveComplaintRequest,
    RideCreateRequest,
    ServiceRequestResponse,
    SignInRequest,
    SignInResponse,
    SignUrlResponse,
    SystemLogResponse,
    VerificationCodeResponse,
)
from campus_assist.service_requests import ServiceRequestService
from campus_assist.storage import StorageClient
from campus_assist.verification import VerificationService
from shared.constants import DISABILITY_SERVICES
from shared.types import (
    Action,
    AssignmentStatus,
    EntityKind,
    Role,
    UploadKind,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _request_response(record: ServiceRequestRecord) -> ServiceRequestResponse:
    return ServiceRequestResponse(**record.as_dict())


def _list_response(records: list[ServiceRequestRecord]) -> ListRequestsResponse:
    return ListRequestsResponse(requests=[_request_response(r) for r in records])


# --- Auth -----------------------------------------------------------------------
@router.post("/auth/sign-in", response_model=SignInResponse)
def sign_in(
    payload: SignInRequest,
    identity: IdentityProvider = Depends(get_identity_provider),
    store: EntityStore = Depends(get_entity_store),
):
    result = identity.sign_in(payload.email, payload.password)
    actor = materialize_actor(store, result.user)
    return SignInResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        actor=ActorResponse(**actor.as_dict()),
    )


@router.post("/hooks/auth-user-created", response_model=HookResponse)
def auth_user_created(
    payload: dict,
    x_auth_hook_secret: Optional[str] = Header(None),
    store: EntityStore = Depends(get_entity_store),
):
    """
    Called by the auth service after a user signs up so the Actor exists
    before the user's first request.
    """
    expected = get_settings().auth_hook_secret
    if not expected or not x_auth_hook_secret or not hmac.compare_digest(
        expected.encode(), x_auth_hook_secret.encode()
    ):
        raise AuthenticationFailed("Invalid hook secret.")
    actor = materialize_actor(store, auth_user_from_payload(payload))
    return HookResponse(status="ok", actor_id=actor.actor_id)


@router.get("/me", response_model=ActorResponse)
def me(
    actor: ActorContext = Depends(get_current_actor),
    store: EntityStore = Depends(get_entity_store),
):
    record = store.get_actor(actor.actor_id)
    if not record:
        raise NotFound("Your profile could not be found.")
    return ActorResponse(**record.as_dict())


# --- Actors ---------------------------------------------------------------------
@router.post("/users", response_model=ActorResponse, status_code=201)
async def create_user(
    email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
    first_name: str = Form(""),
    last_name: str = Form(""),
    role: str = Form(""),
    phone: str = Form(""),
    disability_type: Optional[str] = Form(None),
    assistant_type: Optional[str] = Form(None),
    assistant_specialization: Optional[str] = Form(None),
    time_period: Optional[str] = Form(None),
    bank_name: Optional[str] = Form(None),
    bank_account_number: Optional[str] = Form(None),
    profile_picture: Optional[UploadFile] = File(None),
    application_letter: Optional[UploadFile] = File(None),
    disability_video: Optional[UploadFile] = File(None),
    actor: ActorContext = Depends(get_current_actor),
    store: EntityStore = Depends(get_entity_store),
    identity: IdentityProvider = Depends(get_identity_provider),
    storage: StorageClient = Depends(get_storage_client),
):
    form = RegistrationForm(
        email=email,
        password=password,
        confirm_password=confirm_password,
        first_name=first_name,
        last_name=last_name,
        role=role,
        phone=phone,
        disability_type=disability_type,
        assistant_type=assistant_type,
        assistant_specialization=assistant_specialization,
        time_period=time_period,
        bank_name=bank_name,
        bank_account_number=bank_account_number,
    )
    files = {}
    for kind, upload in (
        (UploadKind.PROFILE_PICTURE, profile_picture),
        (UploadKind.APPLICATION_LETTER, application_letter),
        (UploadKind.DISABILITY_VIDEO, disability_video),
    ):
        if upload is not None and upload.filename:
            files[kind] = RawUpload(
                filename=upload.filename,
                content_type=upload.content_type or "",
                data=await upload.read(),
            )
    # Blocking: bcrypt and the auth service round trip.
    record = await run_in_threadpool(
        register_user, store, identity, storage, actor, form, files
    )
    return ActorResponse(**record.as_dict())


@router.get("/users", response_model=ListActorsResponse)
def list_users(
    role: Optional[Role] = Query(None),
    actor: ActorContext = Depends(get_current_actor),
    store: EntityStore = Depends(get_entity_store),
):
    require(actor, EntityKind.ACTOR, Action.READ_ALL)
    return ListActorsResponse(
        actors=[ActorResponse(**a.as_dict()) for a in store.list_actors(role=role)]
    )


@router.get("/users/assigned", response_model=ListActorsResponse)
def list_assigned_users(
    actor: ActorContext = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
):
    return ListActorsResponse(
        actors=[ActorResponse(**a.as_dict()) for a in service.assigned_actors(actor)]
    )


@router.get("/users/{actor_id}/photo-url", response_model=SignUrlResponse)
def user_photo_url(
    actor_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
    storage: StorageClient = Depends(get_storage_client),
):
    record = service.visible_actor(actor, actor_id)
    path = record.profile.get("photo_path")
    if not path:
        raise NotFound("No profile picture on file.")
    return SignUrlResponse(url=storage.presign_get(path))


# --- Assignments ----------------------------------------------------------------
@router.post("/assignments", response_model=AssignmentResponse, status_code=201)
def create_assignment(
    payload: AssignmentCreateRequest,
    actor: ActorContext = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
):
    record = service.assign(actor, payload.helper_id, payload.student_id)
    return AssignmentResponse(**record.as_dict())


@router.get("/assignments", response_model=ListAssignmentsResponse)
def list_assignments(
    status: Optional[AssignmentStatus] = Query(None),
    actor: ActorContext = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
):
    records = service.list_for(actor, status=status)
    return ListAssignmentsResponse(
        assignments=[AssignmentResponse(**r.as_dict()) for r in records]
    )


@router.post("/assignments/{assignment_id}/deactivate", response_model=AssignmentResponse)
def deactivate_assignment(
    assignment_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: AssignmentService = Depends(get_assignment_service),
):
    return AssignmentResponse(**service.deactivate(actor, assignment_id).as_dict())


# --- Rides ----------------------------------------------------------------------
@router.post("/rides", response_model=ServiceRequestResponse, status_code=201)
def create_ride(
    payload: RideCreateRequest,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(
        service.create_ride(actor, payload.pickup_location, payload.destination)
    )


@router.get("/rides", response_model=ListRequestsResponse)
def list_rides(
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _list_response(service.visible_requests(actor, EntityKind.RIDE))


@router.get("/rides/stats", response_model=DriverStatsResponse)
def ride_stats(
    driver_id: Optional[str] = Query(None),
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return DriverStatsResponse(**service.driver_stats(actor, driver_id))


@router.get("/rides/{request_id}", response_model=ServiceRequestResponse)
def get_ride(
    request_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.get_request(actor, request_id, EntityKind.RIDE))


@router.post("/rides/{request_id}/accept", response_model=ServiceRequestResponse)
def accept_ride(
    request_id: str,
    payload: LocationPayload,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(
        service.accept_ride(actor, request_id, payload.lat, payload.lng)
    )


@router.post("/rides/{request_id}/reject", response_model=ServiceRequestResponse)
def reject_ride(
    request_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.reject_ride(actor, request_id))


@router.post("/rides/{request_id}/complete", response_model=ServiceRequestResponse)
def complete_ride(
    request_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.complete_ride(actor, request_id))


@router.post("/rides/{request_id}/location", response_model=ServiceRequestResponse)
def push_driver_location(
    request_id: str,
    payload: LocationPayload,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(
        service.update_driver_location(actor, request_id, payload.lat, payload.lng)
    )


# --- Complaints -----------------------------------------------------------------
@router.post("/complaints", response_model=ServiceRequestResponse, status_code=201)
def create_complaint(
    payload: ComplaintCreateRequest,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(
        service.create_complaint(actor, payload.title, payload.description)
    )


@router.get("/complaints", response_model=ListRequestsResponse)
def list_complaints(
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _list_response(service.visible_requests(actor, EntityKind.COMPLAINT))


@router.post("/complaints/{request_id}/follow-up", response_model=ServiceRequestResponse)
def follow_up_complaint(
    request_id: str,
    payload: FollowUpRequest,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.add_follow_up(actor, request_id, payload.follow_up))


@router.post("/complaints/{request_id}/start", response_model=ServiceRequestResponse)
def start_complaint(
    request_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.start_complaint(actor, request_id))


@router.post("/complaints/{request_id}/resolve", response_model=ServiceRequestResponse)
def resolve_complaint(
    request_id: str,
    payload: ResolveComplaintRequest,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(
        service.resolve_complaint(actor, request_id, payload.feedback)
    )


# --- Gadget loans ---------------------------------------------------------------
@router.post("/gadget-loans", response_model=ServiceRequestResponse, status_code=201)
def create_gadget_loan(
    payload: GadgetLoanCreateRequest,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.create_gadget_loan(actor, **payload.model_dump()))


@router.get("/gadget-loans", response_model=ListRequestsResponse)
def list_gadget_loans(
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _list_response(service.visible_requests(actor, EntityKind.GADGET_LOAN))


@router.post("/gadget-loans/{request_id}/approve", response_model=ServiceRequestResponse)
def approve_gadget_loan(
    request_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.approve_loan(actor, request_id))


@router.post("/gadget-loans/{request_id}/reject", response_model=ServiceRequestResponse)
def reject_gadget_loan(
    request_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.reject_loan(actor, request_id))


@router.post("/gadget-loans/{request_id}/return", response_model=ServiceRequestResponse)
def return_gadget_loan(
    request_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.return_loan(actor, request_id))


# --- Help confirmations and verification codes ----------------------------------
@router.post(
    "/help-confirmations", response_model=ServiceRequestResponse, status_code=201
)
def create_help_confirmation(
    payload: HelpConfirmationCreateRequest,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(
        service.create_help_confirmation(
            actor, payload.student_id, payload.date, payload.description
        )
    )


@router.get("/help-confirmations", response_model=ListRequestsResponse)
def list_help_confirmations(
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _list_response(
        service.visible_requests(actor, EntityKind.HELP_CONFIRMATION)
    )


@router.post(
    "/help-confirmations/{request_id}/confirm", response_model=ServiceRequestResponse
)
def confirm_help(
    request_id: str,
    payload: ConfirmHelpRequest,
    actor: ActorContext = Depends(get_current_actor),
    verification: VerificationService = Depends(get_verification_service),
):
    return _request_response(verification.confirm_help(actor, request_id, payload.code))


@router.post(
    "/help-confirmations/{request_id}/reject", response_model=ServiceRequestResponse
)
def reject_help_confirmation(
    request_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    return _request_response(service.reject_help_confirmation(actor, request_id))


@router.post("/verification-codes", response_model=IssuedCodeResponse, status_code=201)
def issue_verification_code(
    payload: IssueCodeRequest,
    actor: ActorContext = Depends(get_current_actor),
    verification: VerificationService = Depends(get_verification_service),
):
    """
    The code itself is only shown to the student, never echoed to the helper.
    """
    record = verification.issue(actor, payload.student_id)
    return IssuedCodeResponse(
        code_id=record.code_id,
        student_id=record.student_id,
        expires_at=record.expires_at,
    )


@router.get("/verification-codes", response_model=ListVerificationCodesResponse)
def list_verification_codes(
    actor: ActorContext = Depends(get_current_actor),
    verification: VerificationService = Depends(get_verification_service),
):
    codes = verification.current_codes_for_student(actor)
    return ListVerificationCodesResponse(
        codes=[
            VerificationCodeResponse(
                code_id=c.code_id,
                code=c.code,
                helper_id=c.helper_id,
                helper_name=c.helper_name,
                issued_at=c.issued_at,
                expires_at=c.expires_at,
            )
            for c in codes
        ]
    )


# --- Messages -------------------------------------------------------------------
@router.post("/messages", response_model=MessageResponse, status_code=201)
def send_message(
    payload: MessageCreateRequest,
    actor: ActorContext = Depends(get_current_actor),
    service: MessagingService = Depends(get_messaging_service),
):
    record = service.send(actor, payload.receiver_id, payload.content)
    return MessageResponse(**record.as_dict())


@router.get("/messages/inbox", response_model=ListMessagesResponse)
def inbox(
    unread_only: bool = Query(False),
    actor: ActorContext = Depends(get_current_actor),
    service: MessagingService = Depends(get_messaging_service),
):
    records = service.inbox(actor, unread_only=unread_only)
    return ListMessagesResponse(messages=[MessageResponse(**m.as_dict()) for m in records])


@router.get("/messages/conversation/{other_id}", response_model=ListMessagesResponse)
def conversation(
    other_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: MessagingService = Depends(get_messaging_service),
):
    records = service.conversation(actor, other_id)
    return ListMessagesResponse(messages=[MessageResponse(**m.as_dict()) for m in records])


@router.post("/messages/{message_id}/read", response_model=MessageResponse)
def mark_message_read(
    message_id: str,
    actor: ActorContext = Depends(get_current_actor),
    service: MessagingService = Depends(get_messaging_service),
):
    return MessageResponse(**service.mark_read(actor, message_id).as_dict())


# --- Change feeds ---------------------------------------------------------------
@router.get("/changes", response_model=ChangesResponse)
def changes(
    since: Optional[float] = Query(None),
    actor: ActorContext = Depends(get_current_actor),
    service: ServiceRequestService = Depends(get_request_service),
):
    """
    Polling endpoint: requests relevant to the caller updated after `since`.
    Pass the returned cursor back on the next call.
    """
    records = service.changes_since(actor, since)
    withdrawn = service.withdrawn_since(actor, since)
    cursor = max([r.updated_at for r in records + withdrawn] + [since or 0.0])
    return ChangesResponse(
        cursor=cursor,
        requests=[_request_response(r) for r in records],
        removed=[r.request_id for r in withdrawn],
    )


@router.get("/events", response_model=ListEventsResponse)
def pending_events(
    actor: ActorContext = Depends(get_current_actor),
    events: EventQueue = Depends(get_event_queue),
):
    feed = QueueChangeFeed(events, actor_topic(actor.actor_id))
    return ListEventsResponse(
        events=[ChangeEventResponse(**asdict(e)) for e in feed.drain()]
    )


# --- Admin and reference data ---------------------------------------------------
@router.get("/system-logs", response_model=ListSystemLogsResponse)
def system_logs(
    limit: int = Query(100, ge=1, le=1000),
    log_type: Optional[str] = Query(None, alias="type"),
    actor: ActorContext = Depends(get_current_actor),
    store: EntityStore = Depends(get_entity_store),
):
    require(actor, EntityKind.SYSTEM_LOG, Action.READ_ALL)
    records = store.list_system_logs(limit=limit, log_type=log_type)
    return ListSystemLogsResponse(logs=[SystemLogResponse(**r.as_dict()) for r in records])


@router.get("/client-config", response_model=ClientConfigResponse)
def client_config():
    settings = get_settings()
    return ClientConfigResponse(
        ride_poll_interval_seconds=settings.ride_poll_interval_seconds,
        location_push_interval_seconds=settings.location_push_interval_seconds,
    )


@router.get(
    "/disability-services/{disability_type}", response_model=DisabilityServicesResponse
)
def disability_services(disability_type: str):
    services = DISABILITY_SERVICES.get(disability_type)
    if services is None:
        raise NotFound(f"Unknown disability type '{disability_type}'.")
    return DisabilityServicesResponse(disability_type=disability_type, services=services)
