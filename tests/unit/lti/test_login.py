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
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from database import crud
from database.db import get_db
from database.models import LTILaunchHandoff, UserRole
from lti.services import LoginRequest, handle_login
from lti.utils import utcnow
from main import app
from utility.exceptions import BadRequestError, NotFoundError


@pytest.fixture(scope="function")
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app, follow_redirects=False)
    app.dependency_overrides.clear()


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def test_login_redirects_to_platform(db, platform, settings):
    login = LoginRequest(iss=platform.issuer, login_hint="hint-1", lti_message_hint="msg-1", target_link_uri="https://tool.example.com/lti/launch")

    redirect_url = handle_login(db, login, settings)

    assert redirect_url.startswith(platform.auth_endpoint + "?")
    params = _query(redirect_url)
    assert params["response_type"] == "id_token"
    assert params["response_mode"] == "form_post"
    assert params["scope"] == "openid"
    assert params["prompt"] == "none"
    assert params["client_id"] == platform.client_id
    assert params["redirect_uri"] == "https://tool.example.com/lti/launch"
    assert params["login_hint"] == "hint-1"
    assert params["lti_message_hint"] == "msg-1"

    launch_session = crud.get_launch_session(db, params["state"])
    assert launch_session is not None
    assert launch_session.platform_id == platform.id
    assert launch_session.launch_data["nonce"] == params["nonce"]
    assert launch_session.launch_data["login_hint"] == "hint-1"
    assert launch_session.consumed_at is None

def test_login_without_message_hint_omits_it(db, platform, settings):
    redirect_url = handle_login(db, LoginRequest(iss=platform.issuer, login_hint="h"), settings)

    assert "lti_message_hint" not in _query(redirect_url)

def test_login_generates_fresh_state_and_nonce(db, platform, settings):
    first = _query(handle_login(db, LoginRequest(iss=platform.issuer, login_hint="h"), settings))
    second = _query(handle_login(db, LoginRequest(iss=platform.issuer, login_hint="h"), settings))

    assert first["state"] != second["state"]
    assert first["nonce"] != second["nonce"]
    assert len(first["state"]) == 64

@pytest.mark.parametrize("login", [
    LoginRequest(login_hint="h"),
    LoginRequest(iss="https://canvas.test.instructure.com"),
    LoginRequest(iss="", login_hint=""),
])
def test_login_missing_parameters(db, platform, settings, login):
    with pytest.raises(BadRequestError):
        handle_login(db, login, settings)

def test_login_unknown_issuer(db, platform, settings):
    with pytest.raises(NotFoundError):
        handle_login(db, LoginRequest(iss="https://unknown.example.com", login_hint="h"), settings)

def test_login_deactivated_platform(db, platform, settings):
    crud.deactivate_lti_platform(db, platform.id)

    with pytest.raises(NotFoundError):
        handle_login(db, LoginRequest(iss=platform.issuer, login_hint="h"), settings)

def test_login_client_id_mismatch(db, platform, settings):
    with pytest.raises(BadRequestError):
        handle_login(db, LoginRequest(iss=platform.issuer, login_hint="h", client_id="someone-else"), settings)

def test_login_matching_client_id(db, platform, settings):
    redirect_url = handle_login(db, LoginRequest(iss=platform.issuer, login_hint="h", client_id=platform.client_id), settings)
    assert _query(redirect_url)["client_id"] == platform.client_id

def test_login_from_params_ignores_unknown_fields():
    login = LoginRequest.from_params({"iss": "i", "login_hint": "", "foo": "bar"})
    assert login.iss == "i"
    assert login.login_hint is None

def test_login_post_endpoint(client, platform):
    response = client.post("/lti/login", data={"iss": platform.issuer, "login_hint": "hint-1"})

    assert response.status_code == 302
    assert response.headers["location"].startswith(platform.auth_endpoint)

def test_login_get_endpoint(client, platform):
    response = client.get("/lti/login", params={"iss": platform.issuer, "login_hint": "hint-1"})

    assert response.status_code == 302
    assert _query(response.headers["location"])["login_hint"] == "hint-1"

def test_login_endpoint_runs_storage_work_in_worker_thread(client, platform):
    with patch("lti.router.asyncio.to_thread", new_callable=AsyncMock, return_value="https://lms.test/auth") as mock_to_thread:
        response = client.post("/lti/login", data={"iss": platform.issuer, "login_hint": "hint-1"})

    assert response.status_code == 302
    assert response.headers["location"] == "https://lms.test/auth"
    assert mock_to_thread.call_args.args[0] is handle_login
    assert mock_to_thread.call_args.args[2].login_hint == "hint-1"

def test_login_endpoint_errors(client, platform):
    missing = client.post("/lti/login", data={"login_hint": "h"})
    unknown = client.post("/lti/login", data={"iss": "https://unknown.example.com", "login_hint": "h"})

    assert missing.status_code == 400
    assert "iss" in missing.json()["detail"]
    assert unknown.status_code == 404
    assert unknown.json()["detail"] == "Platform not registered"

def test_nonces_never_reused_across_sessions(db, platform, settings):
    nonces = set()
    for _ in range(50):
        nonces.add(_query(handle_login(db, LoginRequest(iss=platform.issuer, login_hint="u123"), settings))["nonce"])

    assert len(nonces) == 50

def test_login_purges_expired_launch_state(db, platform, settings):
    stale_state = _query(handle_login(db, LoginRequest(iss=platform.issuer, login_hint="u1"), settings))["state"]
    stale = crud.get_launch_session(db, stale_state)
    stale.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()
    user = crud.insert_user_if_absent(db, email="old@example.com", name="Old", role=UserRole.student)
    crud.create_launch_handoff(db, "stale-code", user.id, utcnow() - timedelta(seconds=1))

    fresh_state = _query(handle_login(db, LoginRequest(iss=platform.issuer, login_hint="u2"), settings))["state"]

    assert crud.get_launch_session(db, stale_state) is None
    assert crud.get_launch_session(db, fresh_state) is not None
    assert db.query(LTILaunchHandoff).count() == 0
