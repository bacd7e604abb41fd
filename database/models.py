# © [2025] EDT&Partners. Licensed under CC BY 4.0.

from datetime import datetime, timezone
from typing import Optional
import enum
import uuid
from sqlalchemy import Column, Integer, String, ForeignKey, Text, DateTime, Enum, Boolean, UniqueConstraint, LargeBinary, Index, JSON, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from cryptography.fernet import InvalidToken
from constants import ALL_DELETE_ORPHAN, USERS_ID, LTI_PLATFORMS_ID, LTI_CONTEXTS_ID, LTI_USER_MAPPINGS_ID, LTI_LAUNCH_SESSIONS_ID
from database.db import Base
from lti.secrets import get_fernet

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class UserRole(str, enum.Enum):
    student = 'student'
    instructor = 'instructor'
    admin = 'admin'

class ContextSyncStatus(str, enum.Enum):
    pending = 'pending'
    completed = 'completed'
    error = 'error'

class EnrollmentStatus(str, enum.Enum):
    active = 'active'
    inactive = 'inactive'

class SyncLogStatus(str, enum.Enum):
    started = 'started'
    completed = 'completed'
    failed = 'failed'

class User(Base):
    __tablename__ = 'users'
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.student)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    lti_mappings = relationship("LTIUserMapping", back_populates="user")

class LTIPlatform(Base):
    __tablename__ = "lti_platforms"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    name = Column(String, nullable=False)
    platform_type = Column(String, nullable=False)  # e.g., 'moodle', 'canvas', 'd2l', 'blackboard'
    issuer = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False)
    auth_endpoint = Column(String, nullable=False)
    token_endpoint = Column(String, nullable=False)
    jwks_endpoint = Column(String, nullable=False)
    deployment_id = Column(String, nullable=True)
    nrps_endpoint = Column(String, nullable=True)
    auto_provision_users = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(Uuid(as_uuid=True), ForeignKey(USERS_ID), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    keys = relationship("LTIKey", back_populates="platform", cascade=ALL_DELETE_ORPHAN)
    contexts = relationship("LTIContext", back_populates="platform")

    __table_args__ = (
        # One active registration per issuer
        Index(
            'uq_lti_platforms_active_issuer', 'issuer',
            unique=True,
            postgresql_where=text('is_active'),
            sqlite_where=text('is_active'),
        ),
    )

class LTIKey(Base):
    __tablename__ = "lti_keys"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    platform_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_PLATFORMS_ID), nullable=False, index=True)
    key_id = Column(String, unique=True, nullable=False)
    public_key = Column(Text, nullable=False)
    _private_key = Column("private_key", LargeBinary, nullable=False)
    algorithm = Column(String, nullable=False, default="RS256")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    platform = relationship("LTIPlatform", back_populates="keys")

    @property
    def private_key(self) -> Optional[str]:
        if not self._private_key:
            return None
        try:
            return get_fernet().decrypt(self._private_key).decode()
        except InvalidToken as e:
            raise ValueError(f"Error decrypting LTI private key {self.key_id}") from e

    @private_key.setter
    def private_key(self, value: str):
        self._private_key = get_fernet().encrypt(value.encode()) if value else None

    __table_args__ = (
        # At most one active signing key per platform
        Index(
            'uq_lti_keys_active_platform', 'platform_id',
            unique=True,
            postgresql_where=text('is_active'),
            sqlite_where=text('is_active'),
        ),
    )

class LTILaunchSession(Base):
    __tablename__ = "lti_launch_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    launch_id = Column(String, unique=True, nullable=False, index=True)
    platform_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_PLATFORMS_ID), nullable=False)
    message_type = Column(String, nullable=True)
    launch_data = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)

    platform = relationship("LTIPlatform")

class LTIUserMapping(Base):
    __tablename__ = "lti_user_mappings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    platform_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_PLATFORMS_ID), nullable=False)
    lti_user_id = Column(String, nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey(USERS_ID), nullable=False)
    email = Column(String, nullable=True)
    given_name = Column(String, nullable=True)
    family_name = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    lms_roles = Column(JSONType, nullable=False, default=list)
    lms_user_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    user = relationship("User", back_populates="lti_mappings")
    platform = relationship("LTIPlatform")
    enrollments = relationship("LTIEnrollment", back_populates="user_mapping")

    __table_args__ = (
        UniqueConstraint('platform_id', 'lti_user_id', name='uq_lti_user_mapping'),
    )

class LTIContext(Base):
    __tablename__ = "lti_contexts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    platform_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_PLATFORMS_ID), nullable=False)
    context_id = Column(String, nullable=False)
    label = Column(String, nullable=True)
    title = Column(String, nullable=True)
    lms_course_data = Column(JSONType, nullable=True)
    sync_status = Column(Enum(ContextSyncStatus), nullable=False, default=ContextSyncStatus.pending)
    sync_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    course_id = Column(Uuid(as_uuid=True), nullable=True)  # local course owned by the host app
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    platform = relationship("LTIPlatform", back_populates="contexts")
    enrollments = relationship("LTIEnrollment", back_populates="context")

    __table_args__ = (
        UniqueConstraint('platform_id', 'context_id', name='uq_lti_context'),
    )

class LTIEnrollment(Base):
    __tablename__ = "lti_enrollments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    context_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_CONTEXTS_ID), nullable=False)
    user_mapping_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_USER_MAPPINGS_ID), nullable=False)
    role = Column(String, nullable=False)
    status = Column(Enum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.active)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    context = relationship("LTIContext", back_populates="enrollments")
    user_mapping = relationship("LTIUserMapping", back_populates="enrollments")

    __table_args__ = (
        UniqueConstraint('context_id', 'user_mapping_id', name='uq_lti_enrollment'),
    )

class LTISyncLog(Base):
    __tablename__ = "lti_sync_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    platform_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_PLATFORMS_ID), nullable=False)
    context_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_CONTEXTS_ID), nullable=True)
    sync_type = Column(String, nullable=False)
    status = Column(Enum(SyncLogStatus), nullable=False, default=SyncLogStatus.started)
    items_processed = Column(Integer, nullable=False, default=0)
    items_created = Column(Integer, nullable=False, default=0)
    items_updated = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)
    started_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)

class LTILaunchHandoff(Base):
    __tablename__ = "lti_launch_handoffs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    code_hash = Column(String, unique=True, nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey(USERS_ID), nullable=False)
    launch_session_id = Column(Uuid(as_uuid=True), ForeignKey(LTI_LAUNCH_SESSIONS_ID), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User")
