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

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID
from sqlalchemy import and_, func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from database.models import (
    ContextSyncStatus,
    EnrollmentStatus,
    LTIContext,
    LTIEnrollment,
    LTIKey,
    LTILaunchHandoff,
    LTILaunchSession,
    LTIPlatform,
    LTISyncLog,
    LTIUserMapping,
    SyncLogStatus,
    User,
    UserRole,
)
from database.schemas import LTIPlatformCreate, LTIPlatformUpdate
from utility.exceptions import ConflictError

def _now() -> datetime:
    return datetime.now(timezone.utc)

def _insert_for(db: Session, model):
    """Dialect specific INSERT so that upserts can use ON CONFLICT"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")

# User operations
def get_user(db: Session, user_id: UUID) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()

def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()

def insert_user_if_absent(db: Session, email: str, name: Optional[str], role: UserRole) -> User:
    """Find-or-create a user by email without check-then-write races."""
    try:
        stmt = _insert_for(db, User).values(
            email=email,
            name=name,
            role=role,
        ).on_conflict_do_nothing(index_elements=["email"])
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise e
    return get_user_by_email(db, email)

# LTI Platform CRUD operations
def get_lti_platform(db: Session, platform_id: UUID) -> Optional[LTIPlatform]:
    return db.query(LTIPlatform).filter(LTIPlatform.id == platform_id).first()

def get_active_platform_by_issuer(db: Session, issuer: str) -> Optional[LTIPlatform]:
    """Issuer must match exactly; only one active platform can hold it."""
    return db.query(LTIPlatform).filter(
        LTIPlatform.issuer == issuer,
        LTIPlatform.is_active == True
    ).first()

def get_active_platform_issuers(db: Session) -> List[str]:
    rows = db.query(LTIPlatform.issuer).filter(LTIPlatform.is_active == True).all()
    return [row[0] for row in rows]

def list_lti_platforms(db: Session, active_only: bool = False) -> List[LTIPlatform]:
    query = db.query(LTIPlatform)
    if active_only:
        query = query.filter(LTIPlatform.is_active == True)
    return query.order_by(LTIPlatform.created_at.desc()).all()

def create_lti_platform_with_key(
    db: Session,
    platform_data: LTIPlatformCreate,
    key_id: str,
    public_key: str,
    private_key: str,
    created_by: Optional[UUID] = None,
) -> Tuple[LTIPlatform, LTIKey]:
    """Create a platform and its first signing key in one transaction."""
    try:
        platform = LTIPlatform(**platform_data.model_dump(), is_active=True, created_by=created_by)
        db.add(platform)
        db.flush()

        key = LTIKey(platform_id=platform.id, key_id=key_id, public_key=public_key, algorithm="RS256", is_active=True)
        key.private_key = private_key
        db.add(key)

        db.commit()
        db.refresh(platform)
        db.refresh(key)
        return platform, key
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"An active platform is already registered for issuer {platform_data.issuer}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def update_lti_platform(db: Session, platform_id: UUID, platform_data: LTIPlatformUpdate) -> Optional[LTIPlatform]:
    try:
        platform = get_lti_platform(db, platform_id)
        if not platform:
            return None

        for key, value in platform_data.model_dump(exclude_unset=True).items():
            setattr(platform, key, value)

        db.commit()
        db.refresh(platform)
        return platform
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Another active platform is registered for this issuer") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def deactivate_lti_platform(db: Session, platform_id: UUID) -> Optional[LTIPlatform]:
    """Platforms are never hard-deleted; launch sessions may still reference them."""
    try:
        platform = get_lti_platform(db, platform_id)
        if not platform:
            return None
        platform.is_active = False
        db.commit()
        db.refresh(platform)
        return platform
    except SQLAlchemyError as e:
        db.rollback()
        raise e

# LTI Key operations
def get_active_lti_key(db: Session, platform_id: UUID) -> Optional[LTIKey]:
    return db.query(LTIKey).filter(
        LTIKey.platform_id == platform_id,
        LTIKey.is_active == True
    ).first()

def get_active_lti_keys(db: Session, platform_id: Optional[UUID] = None) -> List[LTIKey]:
    query = db.query(LTIKey).filter(LTIKey.is_active == True)
    if platform_id:
        query = query.filter(LTIKey.platform_id == platform_id)
    return query.order_by(LTIKey.created_at.desc()).all()

def rotate_lti_key(db: Session, platform_id: UUID, key_id: str, public_key: str, private_key: str) -> LTIKey:
    """Deactivate the platform's keys and insert the new active key in one commit."""
    try:
        db.query(LTIKey).filter(
            LTIKey.platform_id == platform_id,
            LTIKey.is_active == True
        ).update({"is_active": False}, synchronize_session=False)

        key = LTIKey(platform_id=platform_id, key_id=key_id, public_key=public_key, algorithm="RS256", is_active=True)
        key.private_key = private_key
        db.add(key)

        db.commit()
        db.refresh(key)
        return key
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"Concurrent key rotation for platform {platform_id}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise e

# LTI Launch session operations
def create_launch_session(
    db: Session,
    launch_id: str,
    platform_id: UUID,
    launch_data: Dict[str, Any],
    expires_at: datetime,
    message_type: Optional[str] = None,
) -> LTILaunchSession:
    try:
        launch_session = LTILaunchSession(
            launch_id=launch_id,
            platform_id=platform_id,
            launch_data=launch_data,
            message_type=message_type,
            expires_at=expires_at,
        )
        db.add(launch_session)
        db.commit()
        db.refresh(launch_session)
        return launch_session
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def get_launch_session(db: Session, launch_id: str) -> Optional[LTILaunchSession]:
    return db.query(LTILaunchSession).filter(LTILaunchSession.launch_id == launch_id).first()

def consume_launch_session(db: Session, launch_session: LTILaunchSession) -> bool:
    """Mark a session used. Returns False when another request consumed it first."""
    try:
        updated = db.query(LTILaunchSession).filter(
            LTILaunchSession.id == launch_session.id,
            LTILaunchSession.consumed_at.is_(None)
        ).update({"consumed_at": _now()}, synchronize_session=False)
        db.commit()
        db.refresh(launch_session)
        return updated == 1
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def update_launch_session_data(
    db: Session,
    launch_session: LTILaunchSession,
    launch_data: Dict[str, Any],
    message_type: Optional[str] = None,
) -> LTILaunchSession:
    try:
        launch_session.launch_data = launch_data
        if message_type:
            launch_session.message_type = message_type
        db.commit()
        db.refresh(launch_session)
        return launch_session
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def delete_expired_launch_sessions(db: Session, now: Optional[datetime] = None) -> int:
    """Remove expired sessions (and the handoffs pointing at them)."""
    now = now or _now()
    try:
        expired_ids = db.query(LTILaunchSession.id).filter(LTILaunchSession.expires_at < now)
        db.query(LTILaunchHandoff).filter(
            LTILaunchHandoff.launch_session_id.in_(expired_ids.scalar_subquery())
        ).delete(synchronize_session=False)
        deleted = db.query(LTILaunchSession).filter(
            LTILaunchSession.expires_at < now
        ).delete(synchronize_session=False)
        db.commit()
        return deleted
    except SQLAlchemyError as e:
        db.rollback()
        raise e

# LTI User mapping operations
def get_user_mapping(db: Session, platform_id: UUID, lti_user_id: str) -> Optional[LTIUserMapping]:
    return db.query(LTIUserMapping).filter(
        LTIUserMapping.platform_id == platform_id,
        LTIUserMapping.lti_user_id == lti_user_id
    ).first()

def upsert_user_mapping(
    db: Session,
    platform_id: UUID,
    lti_user_id: str,
    user_id: UUID,
    email: Optional[str],
    given_name: Optional[str],
    family_name: Optional[str],
    full_name: Optional[str],
    lms_roles: List[str],
    lms_user_data: Optional[Dict[str, Any]],
) -> LTIUserMapping:
    """Insert or refresh the mapping for (platform, lti_user_id).

    The local user of an existing mapping is never replaced.
    """
    now = _now()
    profile = {
        "email": email,
        "given_name": given_name,
        "family_name": family_name,
        "full_name": full_name,
        "lms_roles": lms_roles,
        "lms_user_data": lms_user_data,
        "updated_at": now,
    }
    try:
        stmt = _insert_for(db, LTIUserMapping).values(
            platform_id=platform_id,
            lti_user_id=lti_user_id,
            user_id=user_id,
            created_at=now,
            **profile,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["platform_id", "lti_user_id"],
            set_=profile,
        )
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise e
    return db.query(LTIUserMapping).populate_existing().filter(
        LTIUserMapping.platform_id == platform_id,
        LTIUserMapping.lti_user_id == lti_user_id
    ).one()

# LTI Context operations
def get_lti_context(db: Session, context_id: UUID) -> Optional[LTIContext]:
    return db.query(LTIContext).filter(LTIContext.id == context_id).first()

def upsert_lti_context(
    db: Session,
    platform_id: UUID,
    context_id: str,
    label: Optional[str],
    title: Optional[str],
    lms_course_data: Optional[Dict[str, Any]],
) -> LTIContext:
    now = _now()
    values = {
        "label": label,
        "title": title,
        "lms_course_data": lms_course_data,
        "updated_at": now,
    }
    try:
        stmt = _insert_for(db, LTIContext).values(
            platform_id=platform_id,
            context_id=context_id,
            sync_status=ContextSyncStatus.pending,
            created_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["platform_id", "context_id"],
            set_=values,
        )
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise e
    return db.query(LTIContext).populate_existing().filter(
        LTIContext.platform_id == platform_id,
        LTIContext.context_id == context_id
    ).one()

def list_lti_contexts(db: Session) -> List[Tuple[LTIContext, LTIPlatform, int]]:
    """Contexts with their platform and active enrollment count."""
    return db.query(LTIContext, LTIPlatform, func.count(LTIEnrollment.id)).join(
        LTIPlatform, LTIContext.platform_id == LTIPlatform.id
    ).outerjoin(
        LTIEnrollment,
        and_(LTIEnrollment.context_id == LTIContext.id, LTIEnrollment.status == EnrollmentStatus.active)
    ).group_by(LTIContext.id, LTIPlatform.id).order_by(LTIContext.updated_at.desc()).all()

def update_context_sync_status(
    db: Session,
    context: LTIContext,
    sync_status: ContextSyncStatus,
    sync_error: Optional[str] = None,
) -> LTIContext:
    try:
        context.sync_status = sync_status
        context.sync_error = sync_error
        if sync_status == ContextSyncStatus.completed:
            context.last_synced_at = _now()
        db.commit()
        db.refresh(context)
        return context
    except SQLAlchemyError as e:
        db.rollback()
        raise e

# LTI Enrollment operations
def get_enrollments_by_context(db: Session, context_id: UUID) -> List[LTIEnrollment]:
    return db.query(LTIEnrollment).filter(LTIEnrollment.context_id == context_id).all()

def upsert_lti_enrollment(
    db: Session,
    context_id: UUID,
    user_mapping_id: UUID,
    role: str,
    status: EnrollmentStatus = EnrollmentStatus.active,
) -> LTIEnrollment:
    now = _now()
    values = {
        "role": role,
        "status": status,
        "last_activity_at": now,
        "updated_at": now,
    }
    try:
        stmt = _insert_for(db, LTIEnrollment).values(
            context_id=context_id,
            user_mapping_id=user_mapping_id,
            created_at=now,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["context_id", "user_mapping_id"],
            set_=values,
        )
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise e
    return db.query(LTIEnrollment).populate_existing().filter(
        LTIEnrollment.context_id == context_id,
        LTIEnrollment.user_mapping_id == user_mapping_id
    ).one()

def deactivate_missing_enrollments(db: Session, context_id: UUID, present_mapping_ids: Iterable[UUID]) -> int:
    """Flip to inactive the active enrollments whose member is no longer on the roster."""
    try:
        query = db.query(LTIEnrollment).filter(
            LTIEnrollment.context_id == context_id,
            LTIEnrollment.status == EnrollmentStatus.active
        )
        present = list(present_mapping_ids)
        if present:
            query = query.filter(LTIEnrollment.user_mapping_id.notin_(present))
        updated = query.update(
            {"status": EnrollmentStatus.inactive, "updated_at": _now()},
            synchronize_session=False
        )
        db.commit()
        return updated
    except SQLAlchemyError as e:
        db.rollback()
        raise e

# LTI Sync log operations
def create_sync_log(db: Session, platform_id: UUID, context_id: Optional[UUID], sync_type: str) -> LTISyncLog:
    try:
        sync_log = LTISyncLog(
            platform_id=platform_id,
            context_id=context_id,
            sync_type=sync_type,
            status=SyncLogStatus.started,
            started_at=_now(),
        )
        db.add(sync_log)
        db.commit()
        db.refresh(sync_log)
        return sync_log
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def finalize_sync_log(
    db: Session,
    sync_log: LTISyncLog,
    status: SyncLogStatus,
    started_at: datetime,
    processed: int = 0,
    created: int = 0,
    updated: int = 0,
    failed: int = 0,
    error_message: Optional[str] = None,
    error_details: Optional[Dict[str, Any]] = None,
) -> LTISyncLog:
    """The single completion update a sync log receives."""
    completed_at = _now()
    try:
        sync_log.status = status
        sync_log.items_processed = processed
        sync_log.items_created = created
        sync_log.items_updated = updated
        sync_log.items_failed = failed
        sync_log.error_message = error_message
        sync_log.error_details = error_details
        sync_log.completed_at = completed_at
        sync_log.duration_ms = int((completed_at - started_at).total_seconds() * 1000)
        db.commit()
        db.refresh(sync_log)
        return sync_log
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def list_sync_logs(db: Session, platform_id: Optional[UUID] = None, limit: int = 50) -> List[LTISyncLog]:
    query = db.query(LTISyncLog)
    if platform_id:
        query = query.filter(LTISyncLog.platform_id == platform_id)
    return query.order_by(LTISyncLog.started_at.desc()).limit(limit).all()

# LTI launch handoff operations
def create_launch_handoff(
    db: Session,
    code_hash: str,
    user_id: UUID,
    expires_at: datetime,
    launch_session_id: Optional[UUID] = None,
) -> LTILaunchHandoff:
    try:
        handoff = LTILaunchHandoff(
            code_hash=code_hash,
            user_id=user_id,
            launch_session_id=launch_session_id,
            expires_at=expires_at,
        )
        db.add(handoff)
        db.commit()
        db.refresh(handoff)
        return handoff
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def get_launch_handoff(db: Session, code_hash: str) -> Optional[LTILaunchHandoff]:
    return db.query(LTILaunchHandoff).filter(LTILaunchHandoff.code_hash == code_hash).first()

def consume_launch_handoff(db: Session, handoff: LTILaunchHandoff) -> bool:
    """Single-use: only the first caller flips consumed_at."""
    try:
        updated = db.query(LTILaunchHandoff).filter(
            LTILaunchHandoff.id == handoff.id,
            LTILaunchHandoff.consumed_at.is_(None)
        ).update({"consumed_at": _now()}, synchronize_session=False)
        db.commit()
        db.refresh(handoff)
        return updated == 1
    except SQLAlchemyError as e:
        db.rollback()
        raise e

def delete_expired_handoffs(db: Session, now: Optional[datetime] = None) -> int:
    now = now or _now()
    try:
        deleted = db.query(LTILaunchHandoff).filter(
            LTILaunchHandoff.expires_at < now
        ).delete(synchronize_session=False)
        db.commit()
        return deleted
    except SQLAlchemyError as e:
        db.rollback()
        raise e
