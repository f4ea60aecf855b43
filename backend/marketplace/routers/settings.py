from fastapi import APIRouter, Depends

from marketplace.auth import require_principal
from marketplace.models import (
    FeePreview,
    FeePreviewRequest,
    FeeSettings,
    FeeSettingsUpdateRequest,
    Principal,
    PublicFeeSettings,
)
from marketplace.services import fees
from marketplace.services.errors import MarketplaceAuthorizationError, MarketplaceValidationError
from marketplace.services.settings_store import settings_store

router = APIRouter(prefix="/admin/settings", tags=["settings"])


@router.get("/public", response_model=PublicFeeSettings)
def public_fee_settings():
    return settings_store.get_public()


@router.get("", response_model=FeeSettings)
def get_fee_settings(principal: Principal = Depends(require_principal)):
    return settings_store.get_for_admin(principal)


@router.put("", response_model=FeeSettings)
def update_fee_settings(request: FeeSettingsUpdateRequest, principal: Principal = Depends(require_principal)):
    return settings_store.update(principal, request)


@router.post("/reset", response_model=FeeSettings)
def reset_fee_settings(principal: Principal = Depends(require_principal)):
    return settings_store.reset_to_defaults(principal)


@router.post("/calculate-fees", response_model=FeePreview)
def calculate_fees(request: FeePreviewRequest, principal: Principal = Depends(require_principal)):
    if principal.role != "admin":
        raise MarketplaceAuthorizationError("Only admins can preview fee calculations")
    if not request.amount.is_finite() or request.amount <= 0:
        raise MarketplaceValidationError("Valid amount is required")
    return fees.fee_preview(
        settings_store.get_active(),
        request.amount,
        user_type=request.user_type,
        withdrawal_method=request.withdrawal_method,
    )
