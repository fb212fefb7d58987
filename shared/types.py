# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

from enum import Enum


class Role(str, Enum):
    """Closed set of actor roles. A role never changes after provisioning."""

    ADMIN = "admin"
    HELPER = "helper"
    STUDENT = "student"
    DRIVER = "driver"


class EntityKind(str, Enum):
    """Record collections the access policy reasons about."""

    ACTOR = "actor"
    ASSIGNMENT = "assignment"
    RIDE = "ride"
    HELP_CONFIRMATION = "help_confirmation"
    COMPLAINT = "complaint"
    GADGET_LOAN = "gadget_loan"
    MESSAGE = "message"
    VERIFICATION_CODE = "verification_code"
    SYSTEM_LOG = "system_log"


# Kinds stored as service requests and driven by the lifecycle controller.
REQUEST_KINDS = (
    EntityKind.RIDE,
    EntityKind.HELP_CONFIRMATION,
    EntityKind.COMPLAINT,
    EntityKind.GADGET_LOAN,
)


class Action(str, Enum):
    CREATE = "create"
    READ_OWN = "read_own"
    READ_ASSIGNED = "read_assigned"
    READ_ALL = "read_all"
    TRANSITION = "transition"
    UPDATE = "update"


class RideStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ComplaintStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class LoanStatus(str, Enum):
    PENDING = "pending"
    BORROWED = "borrowed"
    REJECTED = "rejected"
    RETURNED = "returned"


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ActorStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    INACTIVE = "inactive"


class DisabilityType(str, Enum):
    MOBILITY = "mobility"
    VISUAL = "visual"
    HEARING = "hearing"
    COGNITIVE = "cognitive"
    OTHER = "other"


class AssistantType(str, Enum):
    UNDERGRADUATE = "undergraduate"
    POSTGRADUATE = "postgraduate"


class AssistantSpecialization(str, Enum):
    READER = "reader"
    NOTE_TAKER = "note_taker"
    MOBILITY_ASSISTANT = "mobility_assistant"


class TimePeriod(str, Enum):
    FULL_YEAR = "full_year"
    SEMESTER = "semester"
    HALF_SEMESTER = "half_semester"


class BankName(str, Enum):
    CRDB = "CRDB"
    NBC = "NBC"


class UploadKind(str, Enum):
    """Role-specific registration uploads."""

    PROFILE_PICTURE = "profile_picture"
    APPLICATION_LETTER = "application_letter"
    DISABILITY_VIDEO = "disability_video"
