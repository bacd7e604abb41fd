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

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from database.models import UserRole
from lti.config import DEFAULT_ENROLLMENT_ROLE, LTI_VERSION, LTIClaims, LTIMessageType, LTIRoles
from logging_config import setup_logging
from utility.exceptions import BadRequestError

logger = setup_logging(module_name='lti_claims')


class ContextClaim(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    label: Optional[str] = None
    title: Optional[str] = None
    type: List[str] = Field(default_factory=list)


class NRPSClaim(BaseModel):
    model_config = ConfigDict(extra="allow")

    context_memberships_url: str
    service_versions: List[str] = Field(default_factory=list)


class AGSClaim(BaseModel):
    model_config = ConfigDict(extra="allow")

    scope: List[str] = Field(default_factory=list)
    lineitems: Optional[str] = None
    lineitem: Optional[str] = None


class LaunchClaims(BaseModel):
    """Typed view of an LTI 1.3 id_token payload"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    iss: str
    sub: str = Field(min_length=1)
    nonce: str = Field(min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    message_type: str = Field(alias=LTIClaims.MESSAGE_TYPE)
    version: str = Field(alias=LTIClaims.VERSION)
    deployment_id: str = Field(alias=LTIClaims.DEPLOYMENT_ID, min_length=1)
    roles: List[str] = Field(alias=LTIClaims.ROLES, default_factory=list)
    context: Optional[ContextClaim] = Field(alias=LTIClaims.CONTEXT, default=None)
    nrps: Optional[NRPSClaim] = Field(alias=LTIClaims.NRPS, default=None)
    ags: Optional[AGSClaim] = Field(alias=LTIClaims.AGS, default=None)
    resource_link: Optional[Dict[str, Any]] = Field(alias=LTIClaims.RESOURCE_LINK, default=None)
    custom: Optional[Dict[str, Any]] = Field(alias=LTIClaims.CUSTOM, default=None)
    target_link_uri: Optional[str] = Field(alias=LTIClaims.TARGET_LINK_URI, default=None)

    @field_validator('message_type')
    @classmethod
    def check_message_type(cls, value: str) -> str:
        if value not in LTIMessageType.SUPPORTED:
            raise ValueError(f"Unsupported LTI message type: {value}")
        return value

    @field_validator('version')
    @classmethod
    def check_version(cls, value: str) -> str:
        if value != LTI_VERSION:
            raise ValueError(f"Unsupported LTI version: {value}")
        return value

    @property
    def primary_role(self) -> str:
        return primary_role(self.roles)

    @property
    def local_role(self) -> UserRole:
        return map_lti_roles(self.roles)

    def user_data(self) -> Dict[str, Any]:
        return {
            "sub": self.sub,
            "email": self.email,
            "given_name": self.given_name,
            "family_name": self.family_name,
            "name": self.name,
            "roles": self.roles,
        }

    def launch_data(self) -> Dict[str, Any]:
        """Extracted claims persisted on the launch session"""
        return {
            "message_type": self.message_type,
            "deployment_id": self.deployment_id,
            "context": self.context.model_dump() if self.context else None,
            "user": self.user_data(),
            "nrps": self.nrps.model_dump() if self.nrps else None,
            "ags": self.ags.model_dump() if self.ags else None,
            "resource_link": self.resource_link,
            "custom": self.custom,
            "target_link_uri": self.target_link_uri,
        }

    def course_data(self) -> Dict[str, Any]:
        """Raw course claims stored on the context"""
        return {
            LTIClaims.CONTEXT: self.context.model_dump() if self.context else None,
            LTIClaims.NRPS: self.nrps.model_dump() if self.nrps else None,
            LTIClaims.AGS: self.ags.model_dump() if self.ags else None,
        }


def parse_launch_claims(payload: Dict[str, Any]) -> LaunchClaims:
    """Validate a verified token payload, failing fast on malformed claims"""
    try:
        return LaunchClaims.model_validate(payload)
    except ValidationError as e:
        fields = sorted({".".join(str(part) for part in error['loc']) for error in e.errors()})
        logger.warning(f"Malformed LTI claims from {payload.get('iss')}: {fields}")
        raise BadRequestError("Malformed LTI claims", details={"fields": fields}) from e


def map_lti_roles(roles: List[str]) -> UserRole:
    """Coarse mapping: any teaching or administrative role is instructor"""
    for role in roles or []:
        if any(marker in role for marker in LTIRoles.INSTRUCTOR_MARKERS):
            return UserRole.instructor
    return UserRole.student


def primary_role(roles: List[str]) -> str:
    return roles[0] if roles else DEFAULT_ENROLLMENT_ROLE


def synthesize_lti_email(lti_user_id: str, platform_type: str) -> str:
    """Placeholder address for LMS users that do not share their email"""
    return f"{lti_user_id}@lti.{(platform_type or 'lms').lower()}.edu"
