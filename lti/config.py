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

import os
from functools import lru_cache
from typing import Dict, Optional
from pydantic import BaseModel

from logging_config import setup_logging

# Configure logging
logger = setup_logging(module_name='lti_config')

LTI_VERSION = "1.3.0"
DEFAULT_ENROLLMENT_ROLE = "Learner"


class LTIClaims:
    """Namespaced claim URIs carried by LTI 1.3 id_tokens"""

    MESSAGE_TYPE = "https://purl.imsglobal.org/spec/lti/claim/message_type"
    VERSION = "https://purl.imsglobal.org/spec/lti/claim/version"
    DEPLOYMENT_ID = "https://purl.imsglobal.org/spec/lti/claim/deployment_id"
    TARGET_LINK_URI = "https://purl.imsglobal.org/spec/lti/claim/target_link_uri"
    ROLES = "https://purl.imsglobal.org/spec/lti/claim/roles"
    CONTEXT = "https://purl.imsglobal.org/spec/lti/claim/context"
    RESOURCE_LINK = "https://purl.imsglobal.org/spec/lti/claim/resource_link"
    CUSTOM = "https://purl.imsglobal.org/spec/lti/claim/custom"
    TOOL_PLATFORM = "https://purl.imsglobal.org/spec/lti/claim/tool_platform"
    LAUNCH_PRESENTATION = "https://purl.imsglobal.org/spec/lti/claim/launch_presentation"
    LIS = "https://purl.imsglobal.org/spec/lti/claim/lis"
    NRPS = "https://purl.imsglobal.org/spec/lti-nrps/claim/namesroleservice"
    AGS = "https://purl.imsglobal.org/spec/lti-ags/claim/endpoint"


class LTIMessageType:
    RESOURCE_LINK = "LtiResourceLinkRequest"
    DEEP_LINKING = "LtiDeepLinkingRequest"
    SUBMISSION_REVIEW = "LtiSubmissionReviewRequest"

    SUPPORTED = (RESOURCE_LINK, DEEP_LINKING, SUBMISSION_REVIEW)


class LTIRoles:
    """Role URIs that grant instructor access locally"""

    INSTRUCTOR = "http://purl.imsglobal.org/vocab/lis/v2/membership#Instructor"
    LEARNER = "http://purl.imsglobal.org/vocab/lis/v2/membership#Learner"
    ADMINISTRATOR = "http://purl.imsglobal.org/vocab/lis/v2/institution/person#Administrator"
    CONTENT_DEVELOPER = "http://purl.imsglobal.org/vocab/lis/v2/membership#ContentDeveloper"
    TEACHING_ASSISTANT = "http://purl.imsglobal.org/vocab/lis/v2/membership/Instructor#TeachingAssistant"

    INSTRUCTOR_MARKERS = ("Instructor", "Administrator", "ContentDeveloper", "TeachingAssistant")


class LTIServiceScopes:
    NRPS_MEMBERSHIP_READONLY = "https://purl.imsglobal.org/spec/lti-nrps/scope/contextmembership.readonly"
    AGS_LINEITEM = "https://purl.imsglobal.org/spec/lti-ags/scope/lineitem"
    AGS_LINEITEM_READONLY = "https://purl.imsglobal.org/spec/lti-ags/scope/lineitem.readonly"
    AGS_RESULT_READONLY = "https://purl.imsglobal.org/spec/lti-ags/scope/result.readonly"
    AGS_SCORE = "https://purl.imsglobal.org/spec/lti-ags/scope/score"

    CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
    NRPS_ACCEPT = "application/vnd.ims.lti-nrps.v2.membershipcontainer+json"


class PlatformPresets:
    """Endpoint suffixes for the LMS families we know, relative to the issuer URL"""

    PLATFORM_ENDPOINTS: Dict[str, Dict[str, str]] = {
        "canvas": {
            "auth_endpoint": "/api/lti/authorize_redirect",
            "token_endpoint": "/login/oauth2/token",
            "jwks_endpoint": "/api/lti/security/jwks",
        },
        "moodle": {
            "auth_endpoint": "/mod/lti/auth.php",
            "token_endpoint": "/mod/lti/token.php",
            "jwks_endpoint": "/mod/lti/certs.php",
        },
        "d2l": {
            "auth_endpoint": "/d2l/lti/authenticate",
            "token_endpoint": "/d2l/lti/token",
            "jwks_endpoint": "/d2l/.well-known/jwks",
        },
        "blackboard": {
            "auth_endpoint": "/learn/api/public/v1/lti/authorize",
            "token_endpoint": "/learn/api/public/v1/oauth2/token",
            "jwks_endpoint": "/.well-known/jwks.json",
        },
    }

    @classmethod
    def is_known(cls, platform_type: Optional[str]) -> bool:
        return (platform_type or "").lower() in cls.PLATFORM_ENDPOINTS

    @classmethod
    def build_endpoints(cls, platform_type: str, base_url: str) -> Dict[str, str]:
        """Pre-fill auth/token/JWKS endpoints for a platform family"""
        suffixes = cls.PLATFORM_ENDPOINTS.get((platform_type or "").lower())
        if not suffixes:
            return {}
        base = base_url.rstrip('/')
        return {name: f"{base}{suffix}" for name, suffix in suffixes.items()}


class LTISettings(BaseModel):
    """Runtime settings of the launch engine"""
    environment: str = "production"
    backend_domain_name: str
    app_url: str
    launch_session_ttl_seconds: int = 600
    handoff_ttl_seconds: int = 120
    http_timeout_seconds: float = 10.0
    jwks_cache_ttl_seconds: int = 3600
    access_token_ttl_seconds: int = 3600
    refresh_token_ttl_seconds: int = 7 * 24 * 3600

    @property
    def tool_base_url(self) -> str:
        return f"https://{self.backend_domain_name}/lti"

    @property
    def launch_url(self) -> str:
        return f"{self.tool_base_url}/launch"

    @property
    def home_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/home"

    @classmethod
    def from_env(cls) -> "LTISettings":
        backend_domain_name = os.getenv("BACKEND_DOMAIN_NAME")
        if not backend_domain_name:
            raise ValueError("BACKEND_DOMAIN_NAME is not set")
        app_url = os.getenv("REACT_APP_URL")
        if not app_url:
            raise ValueError("REACT_APP_URL is not set")

        return cls(
            environment=os.getenv("ENVIRONMENT", "production"),
            backend_domain_name=backend_domain_name,
            app_url=app_url,
            launch_session_ttl_seconds=int(os.getenv("LTI_LAUNCH_SESSION_TTL_SECONDS", "600")),
            handoff_ttl_seconds=int(os.getenv("LTI_HANDOFF_TTL_SECONDS", "120")),
            http_timeout_seconds=float(os.getenv("LTI_HTTP_TIMEOUT_SECONDS", "10")),
            jwks_cache_ttl_seconds=int(os.getenv("LTI_JWKS_CACHE_TTL_SECONDS", "3600")),
            access_token_ttl_seconds=int(os.getenv("LTI_ACCESS_TOKEN_TTL_SECONDS", "3600")),
        )


@lru_cache(maxsize=1)
def get_lti_settings() -> LTISettings:
    settings = LTISettings.from_env()
    logger.info(f"LTI settings loaded for {settings.backend_domain_name} ({settings.environment})")
    return settings


class OpenIDConfig():
    @staticmethod
    def build_openid_config(base_url: str) -> dict:
        """Build the tool's OpenID Connect metadata"""
        return {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/login",
            "jwks_uri": f"{base_url}/.well-known/jwks.json",
            "scopes_supported": [
                "openid",
                LTIServiceScopes.NRPS_MEMBERSHIP_READONLY,
                LTIServiceScopes.AGS_LINEITEM,
                LTIServiceScopes.AGS_LINEITEM_READONLY,
                LTIServiceScopes.AGS_RESULT_READONLY,
                LTIServiceScopes.AGS_SCORE,
            ],
            "response_types_supported": ["id_token"],
            "subject_types_supported": ["public", "pairwise"],
            "id_token_signing_alg_values_supported": ["RS256"],
            "claims_supported": [
                "sub",
                "iss",
                "name",
                "given_name",
                "family_name",
                "email",
                LTIClaims.CONTEXT,
                LTIClaims.CUSTOM,
                LTIClaims.DEPLOYMENT_ID,
                LTIClaims.LAUNCH_PRESENTATION,
                LTIClaims.LIS,
                LTIClaims.MESSAGE_TYPE,
                LTIClaims.RESOURCE_LINK,
                LTIClaims.ROLES,
                LTIClaims.TOOL_PLATFORM,
                LTIClaims.VERSION,
            ],
            "token_endpoint_auth_methods_supported": ["private_key_jwt"],
            "token_endpoint_auth_signing_alg_values_supported": ["RS256"],
            "https://purl.imsglobal.org/spec/lti-platform-configuration": {
                "messages_supported": [{"type": message_type} for message_type in LTIMessageType.SUPPORTED],
            },
        }
