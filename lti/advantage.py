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

from typing import Any, Dict, List

import requests
from pylti1p3.exception import LtiException
from pylti1p3.names_roles import NamesRolesProvisioningService
from pylti1p3.registration import Registration
from pylti1p3.service_connector import ServiceConnector

from database.models import LTIKey, LTIPlatform
from logging_config import setup_logging

logger = setup_logging(module_name='lti_advantage')


class LTIServiceError(Exception):
    """Raised when an LTI Advantage service call fails"""

    def __init__(self, message: str, step: str):
        super().__init__(message)
        self.step = step


class ServiceSession(requests.Session):
    """requests session that bounds every service call with a timeout"""

    def __init__(self, timeout: float):
        super().__init__()
        self.timeout = timeout

    def request(self, method, url, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        return super().request(method, url, **kwargs)


class ToolKeyRegistration(Registration):
    """Registration whose service assertions carry the kid published in our JWKS"""

    def __init__(self, kid: str):
        super().__init__()
        self._published_kid = kid

    def get_kid(self):
        return self._published_kid


def build_service_connector(platform: LTIPlatform, key: LTIKey, timeout: float) -> ServiceConnector:
    registration = ToolKeyRegistration(key.key_id)
    registration.set_issuer(platform.issuer)
    registration.set_client_id(platform.client_id)
    registration.set_auth_login_url(platform.auth_endpoint)
    registration.set_auth_token_url(platform.token_endpoint)
    registration.set_key_set_url(platform.jwks_endpoint)
    registration.set_tool_private_key(key.private_key)
    return ServiceConnector(registration, requests_session=ServiceSession(timeout))


def request_access_token(connector: ServiceConnector, scopes: List[str]) -> str:
    """Client-credentials grant; the token is cached on the connector for later service calls"""
    try:
        access_token = connector.get_access_token(scopes)
    except (LtiException, requests.RequestException, ValueError, KeyError, TypeError) as e:
        raise LTIServiceError(f"Failed to get LTI access token: {str(e)}", step="token_exchange") from e
    if not access_token:
        raise LTIServiceError("Token endpoint response has no access_token", step="token_exchange")
    logger.info(f"Obtained access token for scopes {scopes}")
    return access_token


def fetch_memberships(connector: ServiceConnector, memberships_url: str) -> List[Dict[str, Any]]:
    """Fetch every member of a context, following rel="next" links"""
    nrps = NamesRolesProvisioningService(connector, {"context_memberships_url": memberships_url})
    try:
        members = nrps.get_members()
    except (LtiException, requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
        raise LTIServiceError(f"Failed to fetch course members: {str(e)}", step="roster_fetch") from e

    if not isinstance(members, list):
        raise LTIServiceError("Membership container has no members list", step="roster_fetch")
    logger.info(f"Fetched {len(members)} members from {memberships_url}")
    return members
