# sbmanager/api/v2/endpoints/config.py

import json
import logging
from fastapi import APIRouter, Depends, HTTPException

from sbmanager.api.deps import get_coordinator
from sbmanager.services.apply_service import ApplyCoordinator

router = APIRouter()

logger = logging.getLogger(__name__)


@router.get("/preview")
def preview(coordinator: ApplyCoordinator = Depends(get_coordinator)):
    """The configuration that would be written, without writing it."""
    return {"data": json.loads(coordinator.build_config())}


@router.get("/current")
def current(coordinator: ApplyCoordinator = Depends(get_coordinator)):
    content = coordinator.current_config()
    if content is None:
        raise HTTPException(status_code=404, detail="No configuration has been applied yet")
    return {"data": json.loads(content)}


@router.post("/apply")
def apply(coordinator: ApplyCoordinator = Depends(get_coordinator)):
    config_path = coordinator.apply_now()
    return {"message": "Configuration applied", "data": {"path": config_path}}
