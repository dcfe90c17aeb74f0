from datetime import datetime

from pydantic import BaseModel, Field


class UploadPresignRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    content_type: str = Field(min_length=1, max_length=100)


class UploadPresignResponse(BaseModel):
    upload_url: str
    key: str
    file_url: str
    expires_in: int
    expires_at: datetime
