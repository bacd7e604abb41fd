# 
# Copyright 2025 EDT&Partners
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
# 

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from database import crud
from database.models import LTIPlatform, LTIUserMapping
from database.schemas import UserProfileHints
from lti.bridge import SessionBridge
from lti.claims import map_lti_roles, synthesize_lti_email
from logging_config import setup_logging
from utility.exceptions import ForbiddenError

logger = setup_logging(module_name='lti_provisioning')


@dataclass
class LTIUserProfile:
    lti_user_id: str
    email: Optional[str]
    given_name: Optional[str]
    family_name: Optional[str]
    full_name: Optional[str]
    roles: List[str]
    raw: Optional[Dict[str, Any]] = None


@dataclass
class ResolvedMapping:
    mapping: LTIUserMapping
    created: bool


def resolve_user_mapping(
    db: Session,
    bridge: SessionBridge,
    platform: LTIPlatform,
    profile: LTIUserProfile,
) -> ResolvedMapping:
    """
    Find or provision the local user behind an external (platform, user id) pair.

    Known users get their profile and roles refreshed. Unknown users are only
    provisioned when the platform allows it; an existing account with the same
    email is reused rather than duplicated.

    Raises:
        ForbiddenError: the user is unknown and auto-provisioning is disabled
    """
    existing = crud.get_user_mapping(db, platform.id, profile.lti_user_id)
    if existing:
        user_id = existing.user_id
    elif platform.auto_provision_users:
        email = profile.email or synthesize_lti_email(profile.lti_user_id, platform.platform_type)
        user = bridge.find_or_create_user_by_email(
            email,
            UserProfileHints(
                name=profile.full_name,
                given_name=profile.given_name,
                family_name=profile.family_name,
                role=map_lti_roles(profile.roles).value,
                platform_id=platform.id,
            ),
        )
        user_id = user.id
    else:
        logger.warning(f"Unknown LTI user {profile.lti_user_id} on {platform.name} and auto-provisioning is disabled")
        raise ForbiddenError("User is not provisioned for this platform")

    mapping = crud.upsert_user_mapping(
        db,
        platform_id=platform.id,
        lti_user_id=profile.lti_user_id,
        user_id=user_id,
        email=profile.email,
        given_name=profile.given_name,
        family_name=profile.family_name,
        full_name=profile.full_name,
        lms_roles=profile.roles,
        lms_user_data=profile.raw,
    )
    return ResolvedMapping(mapping=mapping, created=existing is None)
