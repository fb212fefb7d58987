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

"""
Bootstraps the first administrator account.

Every other account is created by an admin through the API, so the first one
has to come from here.
"""

import argparse
import getpass
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from campus_assist import audit
from campus_assist.dependencies import get_entity_store, get_identity_provider
from campus_assist.errors import ServiceError
from campus_assist.registration import EMAIL_PATTERN, materialize_actor
from shared.constants import MIN_PASSWORD_LENGTH
from shared.types import Role

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Create an administrator account")
    parser.add_argument("--email", required=True)
    parser.add_argument("--first-name", required=True)
    parser.add_argument("--last-name", required=True)
    parser.add_argument("--phone", default="")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    if not EMAIL_PATTERN.match(args.email.strip()):
        logger.error("Invalid email address: %s", args.email)
        return 2
    password = getpass.getpass("Password: ")
    if len(password) < MIN_PASSWORD_LENGTH:
        logger.error("Password must be at least %d characters", MIN_PASSWORD_LENGTH)
        return 2
    if password != getpass.getpass("Confirm password: "):
        logger.error("Passwords do not match")
        return 2

    store = get_entity_store()
    identity = get_identity_provider()
    metadata = {
        "first_name": args.first_name.strip(),
        "last_name": args.last_name.strip(),
        "phone": args.phone.strip(),
    }
    try:
        user = identity.sign_up(args.email, password, metadata, Role.ADMIN.value)
        actor = materialize_actor(store, user)
    except ServiceError as exc:
        logger.error("Could not create admin: %s", exc.message)
        return 1

    audit.record(store, None, "Admin created", f"{actor.full_name} ({actor.email}) bootstrapped")
    logger.info("Created admin %s (%s)", actor.actor_id, actor.email)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
