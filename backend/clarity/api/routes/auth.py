"""
Session Routes

Endpoints:
- POST /auth/logout - Clear session cookie
- GET /auth/me - Get current user profile
- GET /auth/me/storage - Storage used across the user's brains

Tokens are minted by the identity service that fronts Clarity; this API
only verifies them (see api/deps.py).
"""

from fastapi import APIRouter, Response, status

from clarity.api.deps import CurrentUser, DbSession
from clarity.config import get_settings
from clarity.schemas.user import StorageUsageRead, UserRead
from clarity.services.storage_usage import storage_accountant

router = APIRouter(prefix="/auth", tags=["auth"])
settings = get_settings()


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(response: Response) -> None:
    """
    Clear the authentication session.

    Note: This only clears the cookie. If the client stored the JWT
    elsewhere, it remains valid until expiry.
    """
    response.delete_cookie(
        key="access_token",
        httponly=True,
        secure=settings.cookie_cross_domain or settings.environment != "development",
        samesite="none" if settings.cookie_cross_domain else "lax",
    )


@router.get("/me", response_model=UserRead)
async def get_me(current_user: CurrentUser) -> UserRead:
    """Get the current authenticated user's profile."""
    return UserRead.model_validate(current_user)


@router.get("/me/storage", response_model=StorageUsageRead)
async def get_my_storage(current_user: CurrentUser, db: DbSession) -> StorageUsageRead:
    used = await storage_accountant.user_usage(db, current_user.id)
    return StorageUsageRead(storage_used=used, storage_quota=current_user.storage_quota)
