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

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from constants import CONTEXT_NOT_FOUND_MESSAGE, NRPS_SYNC_TYPE, PLATFORM_NOT_FOUND_MESSAGE
from database import crud
from database.models import ContextSyncStatus, EnrollmentStatus, LTIContext, LTIPlatform, LTISyncLog, SyncLogStatus
from database.schemas import NRPSMember
from lti.advantage import LTIServiceError, build_service_connector, fetch_memberships, request_access_token
from lti.bridge import SessionBridge
from lti.claims import primary_role
from lti.config import LTIClaims, LTIServiceScopes, LTISettings
from lti.provisioning import LTIUserProfile, resolve_user_mapping
from lti.utils import as_utc, generate_request_id
from logging_config import setup_logging
from utility.exceptions import BadRequestError, InternalError, LTIError, NotFoundError

logger = setup_logging(module_name='lti_nrps')

MEMBER_CREATED = "created"
MEMBER_UPDATED = "updated"
MEMBER_FAILED = "failed"


@dataclass
class MemberOutcome:
    lti_user_id: Optional[str]
    result: str
    user_mapping_id: Optional[UUID] = None
    error: Optional[str] = None


@dataclass
class SyncStats:
    total: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    deactivated: int = 0
    outcomes: List[MemberOutcome] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: List[MemberOutcome]) -> "SyncStats":
        return cls(
            total=len(outcomes),
            created=sum(1 for o in outcomes if o.result == MEMBER_CREATED),
            updated=sum(1 for o in outcomes if o.result == MEMBER_UPDATED),
            failed=sum(1 for o in outcomes if o.result == MEMBER_FAILED),
            outcomes=outcomes,
        )

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "deactivated": self.deactivated,
        }


def resolve_nrps_url(context: LTIContext, platform: LTIPlatform) -> Optional[str]:
    """Roster URL from the context's launch claims, else the platform configuration"""
    course_data = context.lms_course_data or {}
    nrps_claim = course_data.get(LTIClaims.NRPS) or {}
    return nrps_claim.get("context_memberships_url") or platform.nrps_endpoint


def member_status(member: NRPSMember) -> EnrollmentStatus:
    # NRPS omits status for active members
    return EnrollmentStatus.active if (member.status or "Active") == "Active" else EnrollmentStatus.inactive


class RosterSyncEngine:
    """Reconciles local enrollments of one context with the platform roster"""

    def __init__(self, db: Session, bridge: SessionBridge, settings: LTISettings):
        self._db = db
        self._bridge = bridge
        self._settings = settings

    def sync(self, context_id: UUID, platform_id: UUID) -> SyncStats:
        request_id = generate_request_id()
        logger.info(f"[{request_id}] Starting NRPS sync for context {context_id} on platform {platform_id}")

        platform = crud.get_lti_platform(self._db, platform_id)
        if not platform:
            raise NotFoundError(PLATFORM_NOT_FOUND_MESSAGE)

        context = crud.get_lti_context(self._db, context_id)
        if not context:
            raise NotFoundError(CONTEXT_NOT_FOUND_MESSAGE)
        if context.platform_id != platform.id:
            raise BadRequestError("Context does not belong to this platform")

        key = crud.get_active_lti_key(self._db, platform.id)
        if not key:
            raise BadRequestError("No active LTI key found for platform")

        nrps_url = resolve_nrps_url(context, platform)
        if not nrps_url:
            raise BadRequestError("NRPS not available for this platform/context")

        sync_log = crud.create_sync_log(self._db, platform.id, context.id, NRPS_SYNC_TYPE)
        started_at = as_utc(sync_log.started_at)

        try:
            connector = build_service_connector(platform, key, timeout=self._settings.http_timeout_seconds)
            request_access_token(connector, [LTIServiceScopes.NRPS_MEMBERSHIP_READONLY])
            raw_members = fetch_memberships(connector, nrps_url)
        except LTIServiceError as e:
            logger.error(f"[{request_id}] NRPS sync failed at {e.step} for {platform.name} ({platform.issuer}): {str(e)}")
            self._record_failure(request_id, sync_log, context, started_at, str(e), {"step": e.step, "type": type(e.__cause__ or e).__name__})
            raise InternalError("Roster sync failed", details={"step": e.step}) from e

        outcomes = [self._process_member(request_id, platform, context, raw) for raw in raw_members]
        stats = SyncStats.from_outcomes(outcomes)

        try:
            present_mapping_ids = [o.user_mapping_id for o in outcomes if o.user_mapping_id]
            stats.deactivated = crud.deactivate_missing_enrollments(self._db, context.id, present_mapping_ids)

            crud.finalize_sync_log(
                self._db,
                sync_log,
                SyncLogStatus.completed,
                started_at,
                processed=stats.total,
                created=stats.created,
                updated=stats.updated,
                failed=stats.failed,
                error_details={"failures": [
                    {"lti_user_id": o.lti_user_id, "error": o.error} for o in outcomes if o.result == MEMBER_FAILED
                ]} if stats.failed else None,
            )
            crud.update_context_sync_status(self._db, context, ContextSyncStatus.completed)
        except SQLAlchemyError as e:
            self._db.rollback()
            logger.error(f"[{request_id}] NRPS sync failed at reconcile for {platform.name} ({platform.issuer}): {str(e)}")
            self._record_failure(request_id, sync_log, context, started_at, "Failed to reconcile roster", {
                "step": "reconcile",
                "type": type(e).__name__,
                "processed": stats.total,
            })
            raise InternalError("Roster sync failed", details={"step": "reconcile"}) from e

        logger.info(f"[{request_id}] NRPS sync completed: {stats.as_dict()}")
        return stats

    def _record_failure(
        self,
        request_id: str,
        sync_log: LTISyncLog,
        context: LTIContext,
        started_at: datetime,
        message: str,
        details: Dict[str, Any],
    ) -> None:
        try:
            crud.finalize_sync_log(
                self._db,
                sync_log,
                SyncLogStatus.failed,
                started_at,
                error_message=message,
                error_details=details,
            )
            crud.update_context_sync_status(self._db, context, ContextSyncStatus.error, message)
        except SQLAlchemyError as e:
            logger.error(f"[{request_id}] Could not record sync failure for log {sync_log.id}: {str(e)}")

    def _process_member(self, request_id: str, platform: LTIPlatform, context: LTIContext, raw: Dict[str, Any]) -> MemberOutcome:
        lti_user_id = raw.get("user_id") if isinstance(raw, dict) else None
        # a known member stays present even when this entry is unusable
        existing = crud.get_user_mapping(self._db, platform.id, lti_user_id) if isinstance(lti_user_id, str) else None
        user_mapping_id = existing.id if existing else None
        try:
            member = NRPSMember.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"[{request_id}] Skipping malformed roster member {lti_user_id}: {e.error_count()} error(s)")
            return MemberOutcome(lti_user_id, MEMBER_FAILED, user_mapping_id=user_mapping_id, error="Malformed member")

        try:
            resolved = resolve_user_mapping(
                self._db,
                self._bridge,
                platform,
                LTIUserProfile(
                    lti_user_id=member.user_id,
                    email=member.email,
                    given_name=member.given_name,
                    family_name=member.family_name,
                    full_name=member.name,
                    roles=member.roles,
                    raw=member.model_dump(),
                ),
            )
            user_mapping_id = resolved.mapping.id
            crud.upsert_lti_enrollment(
                self._db,
                context_id=context.id,
                user_mapping_id=resolved.mapping.id,
                role=primary_role(member.roles),
                status=member_status(member),
            )
            return MemberOutcome(
                member.user_id,
                MEMBER_CREATED if resolved.created else MEMBER_UPDATED,
                user_mapping_id=user_mapping_id,
            )
        except (LTIError, SQLAlchemyError, ValueError) as e:
            self._db.rollback()
            logger.error(f"[{request_id}] Error processing member {member.user_id} of {platform.name}: {str(e)}")
            return MemberOutcome(member.user_id, MEMBER_FAILED, user_mapping_id=user_mapping_id, error=str(e))
