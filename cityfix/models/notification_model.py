from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class NotificationModel(BaseModel):
    id: Optional[str] = Field(default=None, alias="_id")
    userId: str
    message: str
    reportId: Optional[str] = None
    read: bool = False
    createdAt: datetime

    class Config:
        populate_by_name = True


class PushMessage(BaseModel):
    """One Expo push message; serialized as-is into the request body."""

    to: str
    title: str = "CityFix"
    body: str
    sound: str = "default"
    data: Dict[str, Any] = {}
