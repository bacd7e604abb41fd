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
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from constants import INTERNAL_SERVER_ERROR_MESSAGE, NO_ACTIVE_KEY_MESSAGE, PLATFORM_NOT_FOUND_MESSAGE
from database import crud
from database.db import get_db
from database.models import User
from database.schemas import (
    LTIContextResponse,
    LTIKeyMetadata,
    LTIPlatformCreate,
    LTIPlatformResponse,
    LTIPlatformUpdate,
    LTISyncLogResponse,
    NRPSSyncRequest,
)
from lti.bridge import SessionBridge
from lti.config import LTISettings, get_lti_settings
from lti.dependencies import get_session_bridge
from lti.keys import generate_key_pair, rotate_platform_key
from lti.nrps import RosterSyncEngine
from logging_config import setup_logging
from utility.auth import require_admin
from utility.exceptions import LTIError

logger = setup_logging(module_name='lti_management')

router = APIRouter()

# LTI Platform Management Endpoints
@router.post("/platforms", response_model=Dict[str, Any], tags=["LTI Management"])
def register_platform(
    platform: LTIPlatformCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Register a new LTI platform together with its first signing key"""
    try:
        key_pair = generate_key_pair()
        db_platform, key = crud.create_lti_platform_with_key(
            db,
            platform,
            key_id=key_pair.key_id,
            public_key=key_pair.public_key_pem,
            private_key=key_pair.private_key_pem,
            created_by=current_user.id,
        )
    except LTIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"Error registering platform {platform.issuer}: {str(e)}")
        raise HTTPException(status_code=500, detail=INTERNAL_SERVER_ERROR_MESSAGE)

    logger.info(f"Registered LTI platform {db_platform.name} ({db_platform.issuer}) with key {key.key_id}")
    return {
        "status": "success",
        "platform": LTIPlatformResponse.model_validate(db_platform).model_dump(mode="json"),
        "key_id": key.key_id,
    }

@router.get("/platforms", response_model=List[LTIPlatformResponse], tags=["LTI Management"])
def list_platforms(
    active_only: bool = False,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """List registered LTI platforms, newest first"""
    return crud.list_lti_platforms(db, active_only)

@router.patch("/platforms/{platform_id}", response_model=Dict[str, Any], tags=["LTI Management"])
def update_platform(
    platform_id: UUID,
    platform_update: LTIPlatformUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Update an existing LTI platform"""
    try:
        platform = crud.update_lti_platform(db, platform_id, platform_update)
    except LTIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if not platform:
        raise HTTPException(status_code=404, detail=PLATFORM_NOT_FOUND_MESSAGE)

    return {
        "status": "success",
        "platform": LTIPlatformResponse.model_validate(platform).model_dump(mode="json"),
    }

@router.delete("/platforms/{platform_id}", tags=["LTI Management"])
def deactivate_platform(
    platform_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Deactivate an LTI platform (platforms are never hard-deleted)"""
    platform = crud.deactivate_lti_platform(db, platform_id)
    if not platform:
        raise HTTPException(status_code=404, detail=PLATFORM_NOT_FOUND_MESSAGE)
    return {"status": "success", "platform_id": str(platform.id), "is_active": platform.is_active}

# Key management
@router.post("/platforms/{platform_id}/keys", tags=["LTI Management"])
def generate_platform_key(
    platform_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Generate and activate a new signing key, deactivating the previous ones"""
    platform = crud.get_lti_platform(db, platform_id)
    if not platform:
        raise HTTPException(status_code=404, detail=PLATFORM_NOT_FOUND_MESSAGE)

    try:
        key = rotate_platform_key(db, platform)
    except LTIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"Key rotation failed for platform {platform.name}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to store key")

    return {"success": True, "key_id": key.key_id, "platform_name": platform.name}

@router.get("/platforms/{platform_id}/keys", response_model=LTIKeyMetadata, tags=["LTI Management"])
def get_platform_key(
    platform_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Metadata of the active key; the private key never leaves the server"""
    key = crud.get_active_lti_key(db, platform_id)
    if not key:
        raise HTTPException(status_code=404, detail=NO_ACTIVE_KEY_MESSAGE)
    return key

# Contexts and roster sync
@router.get("/contexts", response_model=List[LTIContextResponse], tags=["LTI Management"])
def list_contexts(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """List LMS contexts with their platform and active enrollment count"""
    return [
        LTIContextResponse(
            id=context.id,
            platform_id=platform.id,
            platform_name=platform.name,
            platform_type=platform.platform_type,
            context_id=context.context_id,
            label=context.label,
            title=context.title,
            sync_status=context.sync_status,
            sync_error=context.sync_error,
            last_synced_at=context.last_synced_at,
            enrollment_count=enrollment_count,
        )
        for context, platform, enrollment_count in crud.list_lti_contexts(db)
    ]

@router.post("/sync/nrps", tags=["LTI Management"])
def sync_nrps(
    body: NRPSSyncRequest,
    db: Session = Depends(get_db),
    bridge: SessionBridge = Depends(get_session_bridge),
    settings: LTISettings = Depends(get_lti_settings),
    current_user: User = Depends(require_admin),
):
    """Synchronize a context's enrollments with the LMS roster (NRPS)"""
    try:
        stats = RosterSyncEngine(db, bridge, settings).sync(body.context_id, body.platform_id)
    except LTIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.error(f"NRPS sync error for context {body.context_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=INTERNAL_SERVER_ERROR_MESSAGE)

    return {"success": True, "stats": stats.as_dict()}

@router.get("/sync/logs", response_model=List[LTISyncLogResponse], tags=["LTI Management"])
def list_sync_logs(
    platform_id: Optional[UUID] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Recent roster synchronization runs"""
    return crud.list_sync_logs(db, platform_id, min(max(limit, 1), 200))
