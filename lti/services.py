# © [2025] EDT&Partners. Licensed under CC BY 4.0.

import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import crud
from database.models import LTILaunchSession, LTIPlatform
from lti.bridge import SessionBridge, SessionTokens
from lti.claims import LaunchClaims, parse_launch_claims
from lti.config import LTISettings
from lti.provisioning import LTIUserProfile, resolve_user_mapping
from lti.utils import SecurityUtils, as_utc, build_redirect_url, generate_request_id, utcnow
from lti.verifier import TokenVerifier
from logging_config import redact, setup_logging
from utility.exceptions import BadRequestError, InternalError, NotFoundError

# Configure logging
logger = setup_logging(module_name='lti_services')

STATE_BYTES = 32
NONCE_BYTES = 32
HANDOFF_CODE_BYTES = 32


@dataclass
class LoginRequest:
    iss: Optional[str] = None
    login_hint: Optional[str] = None
    target_link_uri: Optional[str] = None
    lti_message_hint: Optional[str] = None
    client_id: Optional[str] = None
    lti_deployment_id: Optional[str] = None

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "LoginRequest":
        return cls(**{name: params.get(name) or None for name in cls.__dataclass_fields__})


def handle_login(db: Session, login: LoginRequest, settings: LTISettings) -> str:
    """
    First leg of the OIDC handshake.

    Creates a launch session keyed by state and returns the platform
    authorization URL the user agent must be redirected to.
    """
    request_id = generate_request_id()
    if not login.iss or not login.login_hint:
        raise BadRequestError("Missing required parameters: iss and login_hint")

    platform = crud.get_active_platform_by_issuer(db, login.iss)
    if not platform:
        logger.error(f"[{request_id}] No active platform for issuer {login.iss}. Known issuers: {crud.get_active_platform_issuers(db)}")
        raise NotFoundError("Platform not registered")

    if login.client_id and login.client_id != platform.client_id:
        logger.warning(f"[{request_id}] client_id mismatch for {platform.issuer}: got {login.client_id}")
        raise BadRequestError("client_id does not match the registered platform")

    state = SecurityUtils.generate_opaque_token(STATE_BYTES)
    nonce = SecurityUtils.generate_opaque_token(NONCE_BYTES)
    now = utcnow()

    try:
        # expired sessions and handoffs go before a new session is added
        crud.delete_expired_handoffs(db, now)
        crud.delete_expired_launch_sessions(db, now)
        crud.create_launch_session(
            db,
            launch_id=state,
            platform_id=platform.id,
            launch_data={
                "nonce": nonce,
                "login_hint": login.login_hint,
                "target_link_uri": login.target_link_uri,
                "lti_message_hint": login.lti_message_hint,
                "lti_deployment_id": login.lti_deployment_id,
            },
            expires_at=now + timedelta(seconds=settings.launch_session_ttl_seconds),
        )
    except SQLAlchemyError as e:
        logger.error(f"[{request_id}] Failed to persist launch session for {platform.issuer}: {str(e)}")
        raise InternalError("Failed to create launch session") from e

    redirect_params = {
        "response_type": "id_token",
        "response_mode": "form_post",
        "scope": "openid",
        "client_id": platform.client_id,
        "redirect_uri": settings.launch_url,
        "state": state,
        "nonce": nonce,
        "login_hint": login.login_hint,
        "lti_message_hint": login.lti_message_hint,
        "prompt": "none",
    }
    logger.info(f"[{request_id}] Login initiated for {platform.name} ({platform.issuer}), state {redact(state)}")
    return build_redirect_url(platform.auth_endpoint, redirect_params)


class LaunchState(str, enum.Enum):
    received = "received"
    token_verified = "token_verified"
    nonce_checked = "nonce_checked"
    deployment_checked = "deployment_checked"
    claims_extracted = "claims_extracted"
    user_resolved = "user_resolved"
    context_resolved = "context_resolved"
    session_minted = "session_minted"
    redirected = "redirected"
    rejected = "rejected"


@dataclass
class LaunchResult:
    redirect_url: str
    user_id: UUID
    user_mapping_id: UUID
    context_id: Optional[UUID]
    enrollment_id: Optional[UUID]
    message_type: str


class LaunchProcessor:
    """Second leg of the handshake: validates the id_token and provisions the user"""

    def __init__(self, db: Session, verifier: TokenVerifier, bridge: SessionBridge, settings: LTISettings):
        self._db = db
        self._verifier = verifier
        self._bridge = bridge
        self._settings = settings
        self.state = LaunchState.received
        self._request_id = generate_request_id()

    def _advance(self, state: LaunchState):
        logger.debug(f"[{self._request_id}] Launch {self.state.value} -> {state.value}")
        self.state = state

    def process(self, id_token: Optional[str], state: Optional[str]) -> LaunchResult:
        try:
            return self._process(id_token, state)
        except Exception:
            self._advance(LaunchState.rejected)
            raise

    def _load_session(self, state: str) -> LTILaunchSession:
        launch_session = crud.get_launch_session(self._db, state)
        if not launch_session:
            logger.warning(f"[{self._request_id}] Unknown launch state {redact(state)}")
            raise BadRequestError("Invalid or expired launch session")
        if launch_session.consumed_at is not None:
            logger.warning(f"[{self._request_id}] Replayed launch state {redact(state)}")
            raise BadRequestError("Invalid or expired launch session")
        if as_utc(launch_session.expires_at) <= utcnow():
            logger.warning(f"[{self._request_id}] Expired launch state {redact(state)}")
            raise BadRequestError("Invalid or expired launch session")
        return launch_session

    def _process(self, id_token: Optional[str], state: Optional[str]) -> LaunchResult:
        if not id_token or not state:
            raise BadRequestError("Missing id_token or state")

        launch_session = self._load_session(state)
        platform = crud.get_lti_platform(self._db, launch_session.platform_id)
        if not platform:
            raise NotFoundError("Platform not found")

        payload = self._verifier.verify(id_token, platform)
        self._advance(LaunchState.token_verified)

        expected_nonce = (launch_session.launch_data or {}).get("nonce")
        if not expected_nonce or payload.get("nonce") != expected_nonce:
            logger.warning(f"[{self._request_id}] Nonce mismatch for {platform.issuer}, user {payload.get('sub')}")
            raise BadRequestError("Nonce mismatch")
        if not crud.consume_launch_session(self._db, launch_session):
            logger.warning(f"[{self._request_id}] Launch session {redact(state)} consumed concurrently")
            raise BadRequestError("Invalid or expired launch session")
        self._advance(LaunchState.nonce_checked)

        claims = parse_launch_claims(payload)
        if platform.deployment_id and claims.deployment_id != platform.deployment_id:
            logger.warning(f"[{self._request_id}] Deployment mismatch for {platform.issuer}: got {claims.deployment_id}")
            raise BadRequestError("Deployment ID mismatch")
        self._advance(LaunchState.deployment_checked)
        self._advance(LaunchState.claims_extracted)

        try:
            return self._provision(platform, launch_session, claims, payload)
        except SQLAlchemyError as e:
            self._db.rollback()
            logger.error(f"[{self._request_id}] Provisioning failed for {platform.issuer}, user {claims.sub}: {str(e)}")
            raise InternalError("Failed to provision LTI launch", details={"state": self.state.value}) from e

    def _provision(
        self,
        platform: LTIPlatform,
        launch_session: LTILaunchSession,
        claims: LaunchClaims,
        payload: Dict[str, Any],
    ) -> LaunchResult:
        resolved = resolve_user_mapping(
            self._db,
            self._bridge,
            platform,
            LTIUserProfile(
                lti_user_id=claims.sub,
                email=claims.email,
                given_name=claims.given_name,
                family_name=claims.family_name,
                full_name=claims.name,
                roles=claims.roles,
                raw=claims.user_data(),
            ),
        )
        mapping = resolved.mapping
        self._advance(LaunchState.user_resolved)

        context = None
        enrollment = None
        if claims.context:
            context = crud.upsert_lti_context(
                self._db,
                platform_id=platform.id,
                context_id=claims.context.id,
                label=claims.context.label,
                title=claims.context.title,
                lms_course_data=claims.course_data(),
            )
            enrollment = crud.upsert_lti_enrollment(
                self._db,
                context_id=context.id,
                user_mapping_id=mapping.id,
                role=claims.primary_role,
            )
        self._advance(LaunchState.context_resolved)

        launch_data = dict(launch_session.launch_data or {})
        launch_data.update(claims.launch_data())
        launch_data["payload"] = payload
        crud.update_launch_session_data(self._db, launch_session, launch_data, message_type=claims.message_type)

        code = SecurityUtils.generate_opaque_token(HANDOFF_CODE_BYTES)
        crud.create_launch_handoff(
            self._db,
            code_hash=SecurityUtils.hash_token(code),
            user_id=mapping.user_id,
            expires_at=utcnow() + timedelta(seconds=self._settings.handoff_ttl_seconds),
            launch_session_id=launch_session.id,
        )
        self._advance(LaunchState.session_minted)

        redirect_url = build_redirect_url(self._settings.home_url, {"lti_launch": "true", "code": code})
        self._advance(LaunchState.redirected)
        logger.info(
            f"[{self._request_id}] Launch completed for {platform.name} ({platform.issuer}), "
            f"lti user {claims.sub}, context {claims.context.id if claims.context else None}, "
            f"new user mapping: {resolved.created}"
        )
        return LaunchResult(
            redirect_url=redirect_url,
            user_id=mapping.user_id,
            user_mapping_id=mapping.id,
            context_id=context.id if context else None,
            enrollment_id=enrollment.id if enrollment else None,
            message_type=claims.message_type,
        )


def exchange_handoff_code(db: Session, bridge: SessionBridge, code: Optional[str]) -> SessionTokens:
    """Trade a single-use launch code for application session tokens"""
    if not code:
        raise BadRequestError("Missing code")

    handoff = crud.get_launch_handoff(db, SecurityUtils.hash_token(code))
    if not handoff or handoff.consumed_at is not None or as_utc(handoff.expires_at) <= utcnow():
        logger.warning(f"Rejected launch code {redact(code)}")
        raise BadRequestError("Invalid or expired code")
    if not crud.consume_launch_handoff(db, handoff):
        logger.warning(f"Launch code {redact(code)} consumed concurrently")
        raise BadRequestError("Invalid or expired code")

    user = bridge.get_user(handoff.user_id)
    if not user:
        raise NotFoundError("User not found")
    return bridge.mint_session(user)
