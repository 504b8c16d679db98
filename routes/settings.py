# User value: This file lets admins tune models and thresholds without a redeploy, with an audit trail.
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from schemas.requests import SettingsUpdateRequest
from services.ai.registry import ProviderRegistry
from services.auth import PERMISSION_SYSTEM_CONFIG, require_permission
from services.deps import get_registry, get_settings_service
from services.settings import SettingsService, SettingsValidationError

router = APIRouter(prefix="/settings/smart-upload", tags=["settings"])
logger = logging.getLogger("api.settings")


def _view(settings, registry: ProviderRegistry) -> dict:
    return {"settings": settings.model_dump(), "providers": registry.status()}


@router.get("")
def get_settings(
    user=Depends(require_permission(PERMISSION_SYSTEM_CONFIG)),
    settings_service: SettingsService = Depends(get_settings_service),
    registry: ProviderRegistry = Depends(get_registry),
):
    return _view(settings_service.load(), registry)


@router.put("")
def update_settings(
    body: SettingsUpdateRequest,
    user=Depends(require_permission(PERMISSION_SYSTEM_CONFIG)),
    settings_service: SettingsService = Depends(get_settings_service),
    registry: ProviderRegistry = Depends(get_registry),
):
    try:
        updated = settings_service.update(body, actor=user["email"])
    except SettingsValidationError as exc:
        raise HTTPException(status_code=400, detail={"error_code": "INVALID_REQUEST", "error_message": str(exc)})
    return _view(updated, registry)


@router.get("/audit")
def settings_audit(
    limit: int = Query(default=50, ge=1, le=500),
    user=Depends(require_permission(PERMISSION_SYSTEM_CONFIG)),
    settings_service: SettingsService = Depends(get_settings_service),
):
    return {"entries": settings_service.audit_log(limit=limit)}
