from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum


class Role(str, Enum):
    CITIZEN = "citizen"
    DISPATCHER = "dispatcher"
    ENGINEER = "engineer"
    QA = "qa"
    ADMIN = "admin"


class UserModel(BaseModel):
    id: str = Field(alias="_id")
    email: str
    name: Optional[str] = None
    role: Role = Role.CITIZEN
    disabled: bool = False
    expoPushToken: Optional[str] = None

    class Config:
        populate_by_name = True

    @property
    def display_name(self) -> str:
        return self.name or self.email


class RoleUpdate(BaseModel):
    role: Role


class DisabledUpdate(BaseModel):
    disabled: bool
