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
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import jwt as pyjwt
import pytest
from fastapi.testclient import TestClient

from database import crud
from database.db import get_db
from database.models import EnrollmentStatus, LTIContext, LTIEnrollment, LTILaunchHandoff, LTIUserMapping, User, UserRole
from database.schemas import LTIPlatformUpdate
from lti.bridge import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE
from lti.config import LTIClaims, LTIRoles
from lti.dependencies import get_jwks_cache
from lti.keys import generate_key_pair
from lti.secrets import get_lti_secrets
from lti.services import LaunchProcessor, LaunchState, LoginRequest, exchange_handoff_code, handle_login
from lti.utils import SecurityUtils, utcnow
from main import app
from utility.exceptions import BadRequestError, ForbiddenError, InvalidTokenError


def _start_login(db, platform, settings):
    """Run the login leg and return (state, nonce)"""
    redirect_url = handle_login(db, LoginRequest(iss=platform.issuer, login_hint="hint"), settings)
    params = parse_qs(urlparse(redirect_url).query)
    return params["state"][0], params["nonce"][0]

def _code_from(redirect_url):
    return parse_qs(urlparse(redirect_url).query)["code"][0]

@pytest.fixture(scope="function")
def launch(db, platform, settings, verifier, bridge, make_id_token, jwks_response):
    """Complete a login + launch round trip, returning the processor result"""
    def _launch(**claim_overrides):
        state, nonce = _start_login(db, platform, settings)
        token = make_id_token(nonce, **claim_overrides)
        processor = LaunchProcessor(db, verifier, bridge, settings)
        with patch("lti.verifier.requests.get", return_value=jwks_response):
            return processor.process(token, state)
    return _launch


def test_first_launch_provisions_instructor(db, platform, launch):
    result = launch()

    user = db.query(User).filter(User.id == result.user_id).one()
    assert user.email == "ada@example.edu"
    assert user.name == "Ada Lovelace"
    assert user.role == UserRole.instructor

    mapping = db.query(LTIUserMapping).filter(LTIUserMapping.id == result.user_mapping_id).one()
    assert mapping.platform_id == platform.id
    assert mapping.lti_user_id == "lms-user-1"
    assert mapping.given_name == "Ada"
    assert mapping.lms_roles == [LTIRoles.INSTRUCTOR]

    context = db.query(LTIContext).filter(LTIContext.id == result.context_id).one()
    assert context.context_id == "course-42"
    assert context.title == "Intro to CS"
    assert context.lms_course_data[LTIClaims.NRPS]["context_memberships_url"].endswith("/names_and_roles")

    enrollment = db.query(LTIEnrollment).filter(LTIEnrollment.id == result.enrollment_id).one()
    assert enrollment.role == LTIRoles.INSTRUCTOR
    assert enrollment.status == EnrollmentStatus.active
    assert enrollment.last_activity_at is not None

    assert result.message_type == "LtiResourceLinkRequest"

def test_launch_redirects_with_single_use_code(db, launch):
    result = launch()

    parsed = urlparse(result.redirect_url)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://app.example.com/home"
    params = parse_qs(parsed.query)
    assert params["lti_launch"] == ["true"]
    code = params["code"][0]
    assert "token" not in result.redirect_url

    handoff = crud.get_launch_handoff(db, SecurityUtils.hash_token(code))
    assert handoff.user_id == result.user_id
    assert handoff.consumed_at is None
    # only the hash is stored
    assert db.query(LTILaunchHandoff).filter(LTILaunchHandoff.code_hash == code).count() == 0

def test_launch_session_updated_and_consumed(db, platform, settings, verifier, bridge, make_id_token, jwks_response):
    state, nonce = _start_login(db, platform, settings)
    processor = LaunchProcessor(db, verifier, bridge, settings)

    with patch("lti.verifier.requests.get", return_value=jwks_response):
        processor.process(make_id_token(nonce), state)

    launch_session = crud.get_launch_session(db, state)
    db.refresh(launch_session)
    assert launch_session.consumed_at is not None
    assert launch_session.message_type == "LtiResourceLinkRequest"
    assert launch_session.launch_data["nonce"] == nonce
    assert launch_session.launch_data["context"]["id"] == "course-42"
    assert launch_session.launch_data["user"]["sub"] == "lms-user-1"
    assert processor.state == LaunchState.redirected

def test_returning_user_reuses_mapping(db, launch):
    first = launch()
    second = launch(name="Ada King", given_name="Ada K.")

    assert second.user_id == first.user_id
    assert second.user_mapping_id == first.user_mapping_id
    assert second.context_id == first.context_id
    assert second.enrollment_id == first.enrollment_id
    assert db.query(User).count() == 1
    assert db.query(LTIUserMapping).count() == 1
    assert db.query(LTIEnrollment).count() == 1

    mapping = db.query(LTIUserMapping).one()
    db.refresh(mapping)
    assert mapping.full_name == "Ada King"
    assert mapping.given_name == "Ada K."

def test_existing_account_linked_by_email(db, launch):
    existing = crud.insert_user_if_absent(db, email="ada@example.edu", name="Ada", role=UserRole.admin)

    result = launch()

    assert result.user_id == existing.id
    assert db.query(User).count() == 1
    db.refresh(existing)
    # the role of an existing account is never changed by a launch
    assert existing.role == UserRole.admin

def test_learner_without_email_gets_placeholder(db, launch):
    result = launch(drop=("email",), **{LTIClaims.ROLES: [LTIRoles.LEARNER]})

    user = db.query(User).filter(User.id == result.user_id).one()
    assert user.email == "lms-user-1@lti.canvas.edu"
    assert user.role == UserRole.student
    mapping = db.query(LTIUserMapping).filter(LTIUserMapping.id == result.user_mapping_id).one()
    assert mapping.email is None

def test_auto_provision_disabled_rejects_unknown_user(db, platform, launch):
    crud.update_lti_platform(db, platform.id, LTIPlatformUpdate(auto_provision_users=False))

    with pytest.raises(ForbiddenError) as exc_info:
        launch()

    assert exc_info.value.status_code == 403
    assert db.query(User).count() == 0
    assert db.query(LTIUserMapping).count() == 0

def test_auto_provision_disabled_admits_mapped_user(db, platform, launch):
    first = launch()
    crud.update_lti_platform(db, platform.id, LTIPlatformUpdate(auto_provision_users=False))

    assert launch().user_id == first.user_id

def test_launch_without_context(db, launch):
    result = launch(**{LTIClaims.CONTEXT: None})

    assert result.context_id is None
    assert result.enrollment_id is None
    assert db.query(LTIContext).count() == 0

def test_deployment_mismatch(db, launch):
    with pytest.raises(BadRequestError) as exc_info:
        launch(**{LTIClaims.DEPLOYMENT_ID: "1:other"})
    assert exc_info.value.message == "Deployment ID mismatch"
    assert db.query(User).count() == 0

def test_deployment_not_configured_accepts_any(db, platform, launch):
    crud.update_lti_platform(db, platform.id, LTIPlatformUpdate(deployment_id=None))

    assert launch(**{LTIClaims.DEPLOYMENT_ID: "1:other"}).user_id is not None

def test_nonce_mismatch(db, platform, settings, verifier, bridge, make_id_token, jwks_response):
    state, _ = _start_login(db, platform, settings)
    processor = LaunchProcessor(db, verifier, bridge, settings)

    with patch("lti.verifier.requests.get", return_value=jwks_response):
        with pytest.raises(BadRequestError) as exc_info:
            processor.process(make_id_token("some-other-nonce"), state)

    assert exc_info.value.message == "Nonce mismatch"
    assert processor.state == LaunchState.rejected
    assert db.query(User).count() == 0

def test_token_signed_by_unknown_key(db, platform, settings, verifier, bridge, make_id_token, jwks_response):
    state, nonce = _start_login(db, platform, settings)
    token = make_id_token(nonce, signing_key=generate_key_pair())

    with patch("lti.verifier.requests.get", return_value=jwks_response):
        with pytest.raises(InvalidTokenError):
            LaunchProcessor(db, verifier, bridge, settings).process(token, state)
    assert db.query(User).count() == 0

def test_replayed_state_rejected(db, platform, settings, verifier, bridge, make_id_token, jwks_response):
    state, nonce = _start_login(db, platform, settings)
    token = make_id_token(nonce)

    with patch("lti.verifier.requests.get", return_value=jwks_response):
        LaunchProcessor(db, verifier, bridge, settings).process(token, state)
        with pytest.raises(BadRequestError):
            LaunchProcessor(db, verifier, bridge, settings).process(token, state)

def test_expired_session_rejected(db, platform, settings, verifier, bridge, make_id_token, jwks_response):
    state, nonce = _start_login(db, platform, settings)
    launch_session = crud.get_launch_session(db, state)
    launch_session.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    with patch("lti.verifier.requests.get", return_value=jwks_response):
        with pytest.raises(BadRequestError):
            LaunchProcessor(db, verifier, bridge, settings).process(make_id_token(nonce), state)

@pytest.mark.parametrize("id_token, state", [(None, "s"), ("t", None), ("", "")])
def test_missing_launch_parameters(db, settings, verifier, bridge, id_token, state):
    with pytest.raises(BadRequestError):
        LaunchProcessor(db, verifier, bridge, settings).process(id_token, state)

def test_unknown_state(db, platform, settings, verifier, bridge, make_id_token):
    with pytest.raises(BadRequestError):
        LaunchProcessor(db, verifier, bridge, settings).process(make_id_token("n"), "never-issued")

def test_unsupported_message_type(db, launch):
    with pytest.raises(BadRequestError):
        launch(**{LTIClaims.MESSAGE_TYPE: "LtiStartProctoring"})

# Session handoff

def test_exchange_code_for_session_tokens(db, bridge, launch):
    result = launch()
    tokens = exchange_handoff_code(db, bridge, _code_from(result.redirect_url))

    secret = get_lti_secrets().session_tokens_secret
    access = pyjwt.decode(tokens.access_token, secret, algorithms=["HS256"])
    refresh = pyjwt.decode(tokens.refresh_token, secret, algorithms=["HS256"])
    assert access["sub"] == str(result.user_id)
    assert access["token_type"] == ACCESS_TOKEN_TYPE
    assert access["role"] == "instructor"
    assert refresh["token_type"] == REFRESH_TOKEN_TYPE
    assert tokens.expires_in == 3600

def test_exchange_code_is_single_use(db, bridge, launch):
    code = _code_from(launch().redirect_url)
    exchange_handoff_code(db, bridge, code)

    with pytest.raises(BadRequestError):
        exchange_handoff_code(db, bridge, code)

def test_exchange_expired_code(db, bridge, launch):
    code = _code_from(launch().redirect_url)
    handoff = crud.get_launch_handoff(db, SecurityUtils.hash_token(code))
    handoff.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    with pytest.raises(BadRequestError):
        exchange_handoff_code(db, bridge, code)

@pytest.mark.parametrize("code", [None, "", "0" * 64])
def test_exchange_invalid_code(db, bridge, code):
    with pytest.raises(BadRequestError):
        exchange_handoff_code(db, bridge, code)

# HTTP surface

@pytest.fixture(scope="function")
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    get_jwks_cache().clear()
    yield TestClient(app, follow_redirects=False)
    app.dependency_overrides.clear()

def test_launch_endpoint_redirects_then_exchange(client, db, platform, settings, make_id_token, jwks_response):
    state, nonce = _start_login(db, platform, settings)

    with patch("lti.verifier.requests.get", return_value=jwks_response):
        response = client.post("/lti/launch", data={"id_token": make_id_token(nonce), "state": state})

    assert response.status_code == 303
    location = response.headers["location"]
    assert location.startswith("https://app.example.com/home?lti_launch=true&code=")

    exchange = client.post("/lti/session/exchange", json={"code": _code_from(location)})
    assert exchange.status_code == 200
    body = exchange.json()
    assert body["token_type"] == "bearer"
    assert body["access_token"]
    assert body["refresh_token"]

    replay = client.post("/lti/session/exchange", json={"code": _code_from(location)})
    assert replay.status_code == 400

def test_launch_endpoint_errors(client, db, platform, settings, make_id_token, jwks_response):
    missing = client.post("/lti/launch", data={"state": "abc"})
    assert missing.status_code == 400
    assert missing.json() == {"detail": "Missing id_token or state"}

    state, nonce = _start_login(db, platform, settings)
    forged = make_id_token(nonce, signing_key=generate_key_pair())
    with patch("lti.verifier.requests.get", return_value=jwks_response):
        response = client.post("/lti/launch", data={"id_token": forged, "state": state})
    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid LTI token"}
