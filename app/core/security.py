"""
Sécurité : résolution de l'utilisateur courant et permissions
"""
import logging
from typing import Any
from types import SimpleNamespace
from fastapi import Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.security import OAuth2PasswordBearer
from firebase_admin import auth

from app.core.config import settings
from app.models.firestore_models import get_client


# Bearer token: a Firebase ID token issued to the client
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme)
) -> Any:
    """Obtenir l'utilisateur courant depuis le token Firebase. Retourne un objet léger."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        claims = await run_in_threadpool(auth.verify_id_token, token)
    except Exception as e:
        logging.warning("ID token verification failed: %s", e)
        raise credentials_exception

    firebase_uid = claims.get("uid") or claims.get("sub") or claims.get("user_id")
    if not firebase_uid:
        raise credentials_exception

    user_doc = await get_client().collection("users").document(firebase_uid).get()
    user_data = (user_doc.to_dict() or {}) if user_doc.exists else {}

    role_val = user_data.get("role") or claims.get("role")
    role_name = role_val.get("name") if isinstance(role_val, dict) else role_val

    return SimpleNamespace(
        id=str(firebase_uid),
        email=claims.get("email") or user_data.get("email"),
        is_active=not user_data.get("disabled", False),
        role=SimpleNamespace(name=role_name) if role_name else None,
        permissions=set(user_data.get("permissions") or []),
        raw=user_data,
    )


async def get_current_active_user(
    current_user: Any = Depends(get_current_user)
) -> Any:
    """Obtenir l'utilisateur actif"""
    if not getattr(current_user, "is_active", False):
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user


def check_permission(user: Any, permission: str) -> bool:
    """Les administrateurs ont toutes les permissions"""
    if getattr(user, "role", None) and getattr(user.role, "name", None) == "admin":
        return True
    return permission in getattr(user, "permissions", set())


def require_permission(permission: str):
    """Dépendance vérifiant une permission"""
    async def permission_checker(current_user: Any = Depends(get_current_active_user)):
        if not check_permission(current_user, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions"
            )
        return current_user
    return permission_checker


class Permissions:
    ACADEMIC_DELIBERATION = "academic.deliberation"
