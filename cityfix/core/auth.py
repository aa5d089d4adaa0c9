from fastapi import HTTPException, Depends, Header, status
from typing import Optional, Dict, Any
from jose import JWTError
import logging

from cityfix.core.config import USERS
from cityfix.core.dependencies import get_store
from cityfix.models.user_model import UserModel
from cityfix.services.document_store import DocumentStore
from cityfix.utils.security import decode_access_token

logger = logging.getLogger(__name__)


async def get_current_user(
    authorization: Optional[str] = Header(None),
    store: DocumentStore = Depends(get_store),
) -> Dict[str, Any]:
    """
    Validates the JWT bearer token and loads the user it names.
    The role always comes from the stored user so role changes apply immediately.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not authorization or not authorization.startswith("Bearer "):
        raise credentials_exception

    token = authorization.split(" ", 1)[1]
    try:
        payload = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    user = await store.get(USERS, user_id)
    if user is None:
        raise credentials_exception
    account = UserModel.model_validate(user)
    if account.disabled:
        logger.warning(f"⛔ Disabled user {user_id} attempted access")
        raise HTTPException(status_code=403, detail="Account disabled")

    return {
        "id": account.id,
        "email": account.email,
        "role": account.role.value,
        "name": account.display_name,
    }
