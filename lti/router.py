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

import asyncio
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from constants import CACHE_CONTROL_JWKS, INTERNAL_SERVER_ERROR_MESSAGE
from database.db import get_db
from database.schemas import SessionExchangeRequest, SessionTokensResponse
from lti.bridge import SessionBridge
from lti.config import LTISettings, OpenIDConfig, get_lti_settings
from lti.dependencies import get_session_bridge, get_token_verifier
from lti.keys import publish_jwks
from lti.services import LaunchProcessor, LoginRequest, exchange_handoff_code, handle_login
from lti.utils import get_request_params
from lti.verifier import TokenVerifier
from logging_config import setup_logging
from utility.exceptions import LTIError

# Configure logging
logger = setup_logging(module_name='lti')

router = APIRouter()


async def _login(request: Request, db: Session, settings: LTISettings):
    try:
        params = await get_request_params(request)
        redirect_url = await asyncio.to_thread(handle_login, db, LoginRequest.from_params(params), settings)
        return RedirectResponse(url=redirect_url, status_code=302)
    except LTIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"Error in LTI login: {str(e)}")
        raise HTTPException(status_code=500, detail=INTERNAL_SERVER_ERROR_MESSAGE)


@router.get("/login", tags=["LTI"])
async def login_get(request: Request, db: Session = Depends(get_db), settings: LTISettings = Depends(get_lti_settings)):
    """OIDC login initiation for platforms that integrate via GET"""
    return await _login(request, db, settings)


@router.post("/login", tags=["LTI"])
async def login_post(request: Request, db: Session = Depends(get_db), settings: LTISettings = Depends(get_lti_settings)):
    """OIDC login initiation (third-party initiated login)"""
    return await _login(request, db, settings)


@router.post("/launch", tags=["LTI"])
def launch_post(
    id_token: Optional[str] = Form(None),
    state: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    verifier: TokenVerifier = Depends(get_token_verifier),
    bridge: SessionBridge = Depends(get_session_bridge),
    settings: LTISettings = Depends(get_lti_settings),
):
    """Handles the id_token form post that completes the launch"""
    processor = LaunchProcessor(db, verifier, bridge, settings)
    try:
        result = processor.process(id_token, state)
        return RedirectResponse(url=result.redirect_url, status_code=303)
    except LTIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"Launch error in state {processor.state.value}: {str(e)}")
        raise HTTPException(status_code=500, detail=INTERNAL_SERVER_ERROR_MESSAGE)


@router.post("/session/exchange", response_model=SessionTokensResponse, tags=["LTI"])
def exchange_session(
    body: SessionExchangeRequest,
    db: Session = Depends(get_db),
    bridge: SessionBridge = Depends(get_session_bridge),
):
    """Exchanges the single-use launch code for application session tokens"""
    try:
        tokens = exchange_handoff_code(db, bridge, body.code)
        return SessionTokensResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
        )
    except LTIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"Session exchange error: {str(e)}")
        raise HTTPException(status_code=500, detail=INTERNAL_SERVER_ERROR_MESSAGE)


@router.get("/jwks", tags=["LTI"])
@router.get("/.well-known/jwks.json", tags=["LTI"])
def get_jwks(platform_id: Optional[UUID] = None, db: Session = Depends(get_db)):
    """Returns the JSON Web Key Set (JWKS) of the active tool keys"""
    try:
        return JSONResponse(content=publish_jwks(db, platform_id), headers={"Cache-Control": CACHE_CONTROL_JWKS})
    except Exception as e:
        logger.error(f"JWKS Generation Failed: {str(e)}")
        raise HTTPException(status_code=500, detail=INTERNAL_SERVER_ERROR_MESSAGE)


@router.get("/.well-known/openid-configuration", tags=["LTI"])
def get_openid_configuration(settings: LTISettings = Depends(get_lti_settings)):
    """Returns the OpenID Connect configuration for the tool"""
    return JSONResponse(content=OpenIDConfig.build_openid_config(settings.tool_base_url))
