import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.config import settings
from app.core.dependencies import get_asset_manager, get_current_user
from app.models.user import User
from app.schemas.upload import UploadPresignRequest, UploadPresignResponse
from app.services.assets import AssetManager

router = APIRouter(prefix="/uploads", tags=["uploads"])
logger = logging.getLogger(__name__)


@router.post("/presign", response_model=UploadPresignResponse, status_code=status.HTTP_201_CREATED)
async def presign_upload(
    payload: UploadPresignRequest,
    current_user: User = Depends(get_current_user),
    assets: AssetManager = Depends(get_asset_manager),
) -> UploadPresignResponse:
    content_type = payload.content_type.strip().lower()
    if content_type not in settings.upload_allowed_content_types:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported file type")
    capability = await assets.issue_upload_capability(payload.file_name, content_type, current_user.id)
    logger.info("upload_capability_issued", extra={"key": capability.key, "owner_id": str(current_user.id)})
    return UploadPresignResponse(
        upload_url=capability.upload_url,
        key=capability.key,
        file_url=capability.public_reference,
        expires_in=capability.expires_in,
        expires_at=capability.expires_at,
    )
