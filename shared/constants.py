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

# Upload limits
MAX_IMAGE_BYTES = 2 * 1024 * 1024
MAX_IMAGE_DIMENSION = 1024
MAX_PDF_BYTES = 2 * 1024 * 1024
MAX_VIDEO_BYTES = 100 * 1024 * 1024

# Field limits
MIN_PASSWORD_LENGTH = 6
MAX_MESSAGE_LENGTH = 4000
MAX_DESCRIPTION_LENGTH = 2000
MAX_LOCATION_LENGTH = 256
MAX_TITLE_LENGTH = 200

# Verification codes
VERIFICATION_CODE_LENGTH = 6

# Polling
DEFAULT_RIDE_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_LOCATION_PUSH_INTERVAL_SECONDS = 30.0

# Undelivered change events kept per topic; older ones are dropped.
DEFAULT_EVENT_TOPIC_MAX_LENGTH = 500

DISABILITY_SERVICES = {
    "mobility": [
        "Assistive devices (wheelchairs, crutches) via CCBRT or TLMB",
        "Physical therapy/referral info through local health centers",
    ],
    "visual": [
        "Braille education via Uhuru School for the Blind",
        "Screen reader training/tools (e.g., NVDA, JAWS)",
        "Access to audiobook libraries or TAHRA audiobooks",
        "Eye care services via KCMC, Muhimbili Eye Clinic",
    ],
    "hearing": [
        "Tanzanian Sign Language (TSL) learning resources",
        "Hearing aid access through Ears Inc. Tanzania",
        "Interpreter service directories",
    ],
    "cognitive": [
        "Learning support services",
        "Educational accommodations",
        "Cognitive therapy resources",
    ],
    "other": [
        "Customized support services",
        "Specialized resource referrals",
    ],
}
