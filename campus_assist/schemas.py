"""
Pydantic schemas for the campus assistance API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class SignInRequest(BaseModel):
    email: str
    password: str


class ActorResponse(BaseModel):
    actor_id: str
    email: str
    first_name: str
    last_name: str
    role: str
    phone: Optional[str] = None
    status: str
    profile: dict = Field(default_factory=dict)
    created_at: float
    updated_at: float


class SignInResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int
    actor: ActorResponse


class ListActorsResponse(BaseModel):
    actors: list[ActorResponse]


class AssignmentCreateRequest(BaseModel):
    helper_id: str
    student_id: str


class AssignmentResponse(BaseModel):
    assignment_id: str
    helper_id: str
    student_id: str
    status: str
    created_at: float
    updated_at: float


class ListAssignmentsResponse(BaseModel):
    assignments: list[AssignmentResponse]


class ServiceRequestResponse(BaseModel):
    request_id: str
    kind: str
    requester_id: str
    fulfiller_id: Optional[str] = None
    status: str
    description: str = ""
    details: dict = Field(default_factory=dict)
    revision: int
    created_at: float
    updated_at: float


class ListRequestsResponse(BaseModel):
    requests: list[ServiceRequestResponse]


class RideCreateRequest(BaseModel):
    pickup_location: str
    destination: str


class LocationPayload(BaseModel):
    # Optional so a missing fix surfaces as the location error, not a 422.
    lat: Optional[float] = None
    lng: Optional[float] = None


class DriverStatsResponse(BaseModel):
    driver_id: str
    total_rides: int
    completed_rides: int
    rejected_rides: int
    acceptance_rate: float


class ComplaintCreateRequest(BaseModel):
    title: str
    description: str


class FollowUpRequest(BaseModel):
    follow_up: str


class ResolveComplaintRequest(BaseModel):
    feedback: Optional[str] = None


class GadgetLoanCreateRequest(BaseModel):
    gadget_name: str
    full_name: str
    reg_number: str
    course: str
    disability_type: str
    gadget_types: list[str]
    duration: str


class HelpConfirmationCreateRequest(BaseModel):
    student_id: str
    date: str
    description: str


class ConfirmHelpRequest(BaseModel):
    code: str = Field(..., max_length=16)


class IssueCodeRequest(BaseModel):
    student_id: str


class IssuedCodeResponse(BaseModel):
    code_id: str
    student_id: str
    expires_at: float


class VerificationCodeResponse(BaseModel):
    code_id: str
    code: str
    helper_id: str
    helper_name: str
    issued_at: float
    expires_at: float


class ListVerificationCodesResponse(BaseModel):
    codes: list[VerificationCodeResponse]


class MessageCreateRequest(BaseModel):
    receiver_id: str
    content: str


class MessageResponse(BaseModel):
    message_id: str
    sender_id: str
    receiver_id: str
    content: str
    read: bool
    created_at: float
    updated_at: float


class ListMessagesResponse(BaseModel):
    messages: list[MessageResponse]


class ChangesResponse(BaseModel):
    cursor: float
    requests: list[ServiceRequestResponse]
    # Ids the caller can no longer read; drop them from any local view.
    removed: list[str] = Field(default_factory=list)


class ChangeEventResponse(BaseModel):
    entity_kind: str
    entity_id: str
    change: str
    status: Optional[str] = None
    previous_status: Optional[str] = None
    actor_id: Optional[str] = None
    occurred_at: float


class ListEventsResponse(BaseModel):
    events: list[ChangeEventResponse]


class SystemLogResponse(BaseModel):
    log_id: str
    type: str
    message: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    created_at: float


class ListSystemLogsResponse(BaseModel):
    logs: list[SystemLogResponse]


class ClientConfigResponse(BaseModel):
    ride_poll_interval_seconds: float
    location_push_interval_seconds: float


class DisabilityServicesResponse(BaseModel):
    disability_type: str
    services: list[str]


class HookResponse(BaseModel):
    status: Literal["ok"]
    actor_id: str


class SignUrlResponse(BaseModel):
    url: str
