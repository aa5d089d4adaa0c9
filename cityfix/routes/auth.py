from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from typing import Optional
import logging

from cityfix.core.auth import get_current_user
from cityfix.core.config import USERS
from cityfix.core.dependencies import get_store, get_user_service
from cityfix.models.user_model import Role
from cityfix.services.document_store import DocumentStore
from cityfix.services.push_service import is_expo_push_token
from cityfix.services.user_service import UserService
from cityfix.utils.helpers import new_id, utcnow
from cityfix.utils.security import create_access_token, get_password_hash, verify_password

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Models ---
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LoginResponse(BaseModel):
    token: str
    user_id: str
    email: str
    role: str
    name: Optional[str] = None


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    name: str


class PushTokenRequest(BaseModel):
    token: Optional[str] = None


# --- Endpoints ---

@router.post("/login", response_model=LoginResponse)
async def login(request: LoginRequest, users: UserService = Depends(get_user_service)):
    """Authenticate a user of any role and return a JWT."""
    email = request.email.lower().strip()
    logger.info(f"👉 Login attempt for: {email}")

    user = await users.get_by_email(email)
    if not user or not verify_password(request.password, user.get("passwordHash", "")):
        logger.warning(f"❌ Invalid credentials for: {email}")
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if user.get("disabled"):
        raise HTTPException(status_code=403, detail="Account disabled")

    token = create_access_token(user["_id"], role=user.get("role"))
    logger.info(f"✅ Login successful: {email} ({user.get('role')})")
    return LoginResponse(
        token=token,
        user_id=str(user["_id"]),
        email=user["email"],
        role=user.get("role", Role.CITIZEN.value),
        name=user.get("name"),
    )


@router.post("/register", response_model=LoginResponse)
async def register(
    request: RegisterRequest,
    users: UserService = Depends(get_user_service),
    store: DocumentStore = Depends(get_store),
):
    """Citizen self sign-up; staff roles are granted by an admin afterwards."""
    email = request.email.lower().strip()
    if await users.get_by_email(email):
        raise HTTPException(status_code=409, detail="Email already registered")
    if len(request.password) < 6:
        raise HTTPException(status_code=422, detail="Password must be at least 6 characters")

    user_id = await store.insert(USERS, {
        "_id": new_id(),
        "email": email,
        "name": request.name.strip(),
        "role": Role.CITIZEN.value,
        "disabled": False,
        "passwordHash": get_password_hash(request.password),
        "createdAt": utcnow(),
    })
    logger.info(f"🆕 Citizen registered: {email}")
    return LoginResponse(
        token=create_access_token(user_id, role=Role.CITIZEN.value),
        user_id=user_id,
        email=email,
        role=Role.CITIZEN.value,
        name=request.name.strip(),
    )


@router.put("/push-token")
async def register_push_token(
    request: PushTokenRequest,
    current_user: dict = Depends(get_current_user),
    users: UserService = Depends(get_user_service),
):
    """Store (or clear, with a null token) the caller's Expo push token."""
    if request.token is not None and not is_expo_push_token(request.token):
        raise HTTPException(status_code=422, detail="Not an Expo push token")
    await users.set_push_token(current_user["id"], request.token)
    return {"success": True}


@router.get("/me")
async def me(current_user: dict = Depends(get_current_user)):
    return {"success": True, "user": current_user}
