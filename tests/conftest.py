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

"""
Global pytest configuration and fixtures for the LTI backend tests.

Storage runs on an in-memory SQLite database (the crud layer supports its
upsert dialect), and the LMS side of the handshake is simulated with a
locally generated RSA key whose JWKS is served through a patched
``requests.get``.
"""

import base64
import os
import time
from typing import Any, Dict, Generator
from unittest.mock import MagicMock

# Set up environment variables immediately when module is imported
# This prevents import-time errors from modules that check environment variables
def setup_immediate_env():
    """Set up environment variables immediately to prevent import-time errors."""
    test_env_vars = {
        "AWS_REGION_NAME": "eu-central-1",
        "AWS_DEFAULT_REGION": "eu-central-1",
        "AWS_ACCESS_KEY_ID": "test-access-key-id",
        "AWS_SECRET_ACCESS_KEY": "test-secret-access-key",
        "ENVIRONMENT": "test",
        "DATABASE_URL": "sqlite://",
        "REACT_APP_URL": "https://app.example.com",
        "BACKEND_DOMAIN_NAME": "tool.example.com",
        "LOG_LEVEL": "DEBUG",
        # Fernet keys are 32 url-safe base64 encoded bytes
        "LTI_ENCRYPTION_SECRET": base64.urlsafe_b64encode(b"0" * 32).decode(),
        "LTI_SESSION_TOKENS_SECRET": "test-session-tokens-secret",
    }

    for key, value in test_env_vars.items():
        if key not in os.environ:
            os.environ[key] = value


# Call immediately when module is imported
setup_immediate_env()

import jwt as pyjwt
import requests
import pytest
from sqlalchemy.orm import sessionmaker

from database import crud
from database.db import Base, build_engine
from database.schemas import LTIPlatformCreate
from lti.bridge import DatabaseSessionBridge
from lti.config import LTIClaims, LTISettings
from lti.keys import KeyPair, generate_key_pair, public_key_to_jwk
from lti.secrets import get_lti_secrets
from lti.verifier import JWKSCache, TokenVerifier

ISSUER = "https://canvas.test.instructure.com"
CLIENT_ID = "10000000000001"
DEPLOYMENT_ID = "1:3f9a2c"
INSTRUCTOR_ROLE = "http://purl.imsglobal.org/vocab/lis/v2/membership#Instructor"
LEARNER_ROLE = "http://purl.imsglobal.org/vocab/lis/v2/membership#Learner"


@pytest.fixture(scope="session")
def lms_key_pair() -> KeyPair:
    """Signing key of the simulated LMS"""
    return generate_key_pair()


@pytest.fixture(scope="session")
def lms_jwks(lms_key_pair) -> Dict[str, Any]:
    return {"keys": [public_key_to_jwk(lms_key_pair.public_key_pem, lms_key_pair.key_id)]}


@pytest.fixture(scope="function")
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Generator:
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def settings() -> LTISettings:
    return LTISettings(
        environment="test",
        backend_domain_name="tool.example.com",
        app_url="https://app.example.com",
    )


@pytest.fixture(scope="function")
def platform_and_key(db):
    platform_data = LTIPlatformCreate(
        name="Canvas Test",
        platform_type="canvas",
        issuer=ISSUER,
        client_id=CLIENT_ID,
        deployment_id=DEPLOYMENT_ID,
    )
    tool_key = generate_key_pair()
    return crud.create_lti_platform_with_key(
        db,
        platform_data,
        key_id=tool_key.key_id,
        public_key=tool_key.public_key_pem,
        private_key=tool_key.private_key_pem,
    )


@pytest.fixture(scope="function")
def platform(platform_and_key):
    return platform_and_key[0]


@pytest.fixture(scope="function")
def bridge(db, settings) -> DatabaseSessionBridge:
    return DatabaseSessionBridge(db, get_lti_secrets().session_tokens_secret, settings)


@pytest.fixture(scope="function")
def verifier() -> TokenVerifier:
    return TokenVerifier(JWKSCache(ttl_seconds=3600, timeout=5))


def make_response(json_data: Any = None, status_code: int = 200, links: Dict[str, Any] = None) -> MagicMock:
    """Stand-in for a requests.Response"""
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.url = "https://lms.test/response"
    response.text = str(json_data)
    response.content = b"" if json_data is None else str(json_data).encode()
    response.json.return_value = json_data
    response.links = links or {}
    response.headers = {"link": f'<{links["next"]["url"]}>; rel="next"'} if links and "next" in links else {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error")
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture(scope="function")
def jwks_response(lms_jwks) -> MagicMock:
    return make_response(lms_jwks)


@pytest.fixture(scope="function")
def make_id_token(lms_key_pair):
    """Build an id_token signed by the simulated LMS; keyword overrides replace claims"""
    def _make(nonce: str, signing_key: KeyPair = None, drop=(), **overrides) -> str:
        key = signing_key or lms_key_pair
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "lms-user-1",
            "iat": now,
            "exp": now + 300,
            "nonce": nonce,
            "email": "ada@example.edu",
            "name": "Ada Lovelace",
            "given_name": "Ada",
            "family_name": "Lovelace",
            LTIClaims.MESSAGE_TYPE: "LtiResourceLinkRequest",
            LTIClaims.VERSION: "1.3.0",
            LTIClaims.DEPLOYMENT_ID: DEPLOYMENT_ID,
            LTIClaims.ROLES: [INSTRUCTOR_ROLE],
            LTIClaims.CONTEXT: {"id": "course-42", "label": "CS101", "title": "Intro to CS"},
            LTIClaims.NRPS: {
                "context_memberships_url": f"{ISSUER}/api/lti/courses/42/names_and_roles",
                "service_versions": ["2.0"],
            },
        }
        claims.update(overrides)
        for name in drop:
            claims.pop(name, None)
        return pyjwt.encode(claims, key.private_key_pem, algorithm="RS256", headers={"kid": key.key_id})

    return _make


@pytest.fixture(scope="function")
def response_factory():
    return make_response
