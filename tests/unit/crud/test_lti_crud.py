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

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from database import crud
from database.models import EnrollmentStatus, LTIKey, LTILaunchHandoff, LTILaunchSession, UserRole
from database.schemas import LTIPlatformCreate
from lti.keys import generate_key_pair
from lti.utils import utcnow
from utility.exceptions import ConflictError


def _create_session(db, platform, launch_id, expires_in):
    return crud.create_launch_session(
        db,
        launch_id=launch_id,
        platform_id=platform.id,
        launch_data={"nonce": f"nonce-{launch_id}"},
        expires_at=utcnow() + timedelta(seconds=expires_in),
    )

def test_insert_user_if_absent_is_idempotent(db):
    first = crud.insert_user_if_absent(db, email="a@example.com", name="A", role=UserRole.instructor)
    second = crud.insert_user_if_absent(db, email="a@example.com", name="Other", role=UserRole.student)

    assert first.id == second.id
    assert second.name == "A"
    assert second.role == UserRole.instructor

def test_duplicate_active_issuer_rejected(db, platform):
    tool_key = generate_key_pair()
    duplicate = LTIPlatformCreate(name="Dup", platform_type="canvas", issuer=platform.issuer, client_id="other")

    with pytest.raises(ConflictError):
        crud.create_lti_platform_with_key(db, duplicate, tool_key.key_id, tool_key.public_key_pem, tool_key.private_key_pem)
    assert len(crud.list_lti_platforms(db)) == 1
    assert db.query(LTIKey).count() == 1

def test_issuer_reusable_after_deactivation(db, platform):
    crud.deactivate_lti_platform(db, platform.id)
    tool_key = generate_key_pair()
    replacement = LTIPlatformCreate(name="New", platform_type="canvas", issuer=platform.issuer, client_id="new-client")

    new_platform, _ = crud.create_lti_platform_with_key(db, replacement, tool_key.key_id, tool_key.public_key_pem, tool_key.private_key_pem)

    assert crud.get_active_platform_by_issuer(db, platform.issuer).id == new_platform.id
    assert len(crud.list_lti_platforms(db, active_only=True)) == 1
    assert len(crud.list_lti_platforms(db)) == 2

def test_issuer_match_is_exact(db, platform):
    assert crud.get_active_platform_by_issuer(db, platform.issuer + "/") is None
    assert crud.get_active_platform_by_issuer(db, platform.issuer.upper()) is None

def test_second_active_key_rejected(db, platform_and_key):
    platform, _ = platform_and_key
    key = LTIKey(platform_id=platform.id, key_id="manual", public_key="pem", is_active=True)
    key.private_key = "private"
    db.add(key)

    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

def test_consume_launch_session_once(db, platform):
    launch_session = _create_session(db, platform, "state-1", 600)

    assert crud.consume_launch_session(db, launch_session) is True
    assert crud.consume_launch_session(db, launch_session) is False
    assert launch_session.consumed_at is not None

def test_delete_expired_launch_sessions(db, platform):
    expired = _create_session(db, platform, "old", -60)
    _create_session(db, platform, "fresh", 600)
    user = crud.insert_user_if_absent(db, email="u@example.com", name=None, role=UserRole.student)
    crud.create_launch_handoff(db, "hash-1", user.id, utcnow() + timedelta(seconds=60), launch_session_id=expired.id)

    assert crud.delete_expired_launch_sessions(db) == 1
    assert [s.launch_id for s in db.query(LTILaunchSession).all()] == ["fresh"]
    assert db.query(LTILaunchHandoff).count() == 0

def test_delete_expired_handoffs(db):
    user = crud.insert_user_if_absent(db, email="u@example.com", name=None, role=UserRole.student)
    crud.create_launch_handoff(db, "expired", user.id, utcnow() - timedelta(seconds=1))
    crud.create_launch_handoff(db, "valid", user.id, utcnow() + timedelta(seconds=60))

    assert crud.delete_expired_handoffs(db) == 1
    assert crud.get_launch_handoff(db, "valid") is not None

def test_upsert_user_mapping_keeps_local_user(db, platform):
    first_user = crud.insert_user_if_absent(db, email="a@example.com", name="A", role=UserRole.student)
    other_user = crud.insert_user_if_absent(db, email="b@example.com", name="B", role=UserRole.student)

    created = crud.upsert_user_mapping(db, platform.id, "ext-1", first_user.id, "a@example.com", "A", None, "A", ["Learner"], None)
    updated = crud.upsert_user_mapping(db, platform.id, "ext-1", other_user.id, "a2@example.com", "A2", None, "A2", ["Instructor"], {"k": 1})

    assert updated.id == created.id
    assert updated.user_id == first_user.id
    assert updated.email == "a2@example.com"
    assert updated.lms_roles == ["Instructor"]
    assert updated.lms_user_data == {"k": 1}

def test_upsert_enrollment_reactivates(db, platform):
    user = crud.insert_user_if_absent(db, email="a@example.com", name="A", role=UserRole.student)
    mapping = crud.upsert_user_mapping(db, platform.id, "ext-1", user.id, None, None, None, None, [], None)
    context = crud.upsert_lti_context(db, platform.id, "ctx-1", "L", "T", None)

    first = crud.upsert_lti_enrollment(db, context.id, mapping.id, "Learner", EnrollmentStatus.inactive)
    second = crud.upsert_lti_enrollment(db, context.id, mapping.id, "Instructor")

    assert second.id == first.id
    assert second.status == EnrollmentStatus.active
    assert second.role == "Instructor"

def test_deactivate_missing_enrollments(db, platform):
    context = crud.upsert_lti_context(db, platform.id, "ctx-1", None, None, None)
    mapping_ids = []
    for index in range(3):
        user = crud.insert_user_if_absent(db, email=f"u{index}@example.com", name=None, role=UserRole.student)
        mapping = crud.upsert_user_mapping(db, platform.id, f"ext-{index}", user.id, None, None, None, None, [], None)
        crud.upsert_lti_enrollment(db, context.id, mapping.id, "Learner")
        mapping_ids.append(mapping.id)

    assert crud.deactivate_missing_enrollments(db, context.id, mapping_ids[:2]) == 1
    assert crud.deactivate_missing_enrollments(db, context.id, mapping_ids[:2]) == 0
    assert crud.deactivate_missing_enrollments(db, context.id, []) == 2

def test_insert_for_unsupported_dialect():
    db = MagicMock()
    db.get_bind.return_value.dialect.name = "mysql"

    with pytest.raises(NotImplementedError):
        crud.upsert_lti_context(db, "platform", "ctx", None, None, None)

def test_write_failure_rolls_back():
    db = MagicMock()
    db.commit.side_effect = OperationalError("UPDATE", {}, Exception("connection lost"))

    with pytest.raises(OperationalError):
        crud.deactivate_lti_platform(db, "platform-id")
    db.rollback.assert_called_once()
