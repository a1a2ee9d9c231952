from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.crm.dependencies import get_crm_auth_context
from app.crm.reconciliation.schemas import ContactDealCapture, ContactDealCaptureResult
from app.crm.reconciliation.service import reconciliation_service
from app.platform.security.context import AuthContext


router = APIRouter(prefix="/api/crm", tags=["crm.capture"])


@router.post("/contacts/capture", response_model=ContactDealCaptureResult)
def capture_contact_with_deal(
    payload: ContactDealCapture,
    response: Response,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_crm_auth_context),
) -> ContactDealCaptureResult:
    result = reconciliation_service.capture(db, ctx, payload)
    response.status_code = status.HTTP_201_CREATED if result.contact_action == "created" else status.HTTP_200_OK
    return result
