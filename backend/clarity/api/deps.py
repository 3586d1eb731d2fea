"""
FastAPI Dependencies for Authentication and Authorization.

Key patterns:
1. get_current_user: Extracts and validates JWT, returns User object
2. User-scoped queries: brains, streams and cards are always fetched
   through a join that ends at brains.user_id
3. No global "current user" state - always pass user explicitly

Security model:
- JWT stored in HttpOnly cookie or Authorization header
- Tokens are issued by the identity service; this API only verifies them
- Resources owned by someone else are reported as 404, same as missing ones
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clarity.config import get_settings
from clarity.db.models import Brain, Card, Stream, User
from clarity.db.session import get_db
from clarity.exceptions import NotFoundError
from clarity.services.file_pipeline import FileUploadPipeline
from clarity.services.generation import CardGenerator
from clarity.services.job_queue import JobQueue

settings = get_settings()


# =============================================================================
# JWT UTILITIES
# =============================================================================


def create_access_token(user_id: UUID) -> str:
    """
    Create a JWT access token for a user.

    Token payload contains:
    - sub: user_id as string (standard JWT subject claim)
    - exp: expiration timestamp
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": str(user_id),
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> UUID | None:
    """
    Decode and validate a JWT access token.

    Returns user_id if valid, None if invalid/expired.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        user_id_str = payload.get("sub")
        if user_id_str is None:
            return None
        return UUID(user_id_str)
    except (JWTError, ValueError):
        return None


# =============================================================================
# AUTHENTICATION DEPENDENCIES
# =============================================================================


async def get_token_from_request(
    authorization: Annotated[str | None, Header()] = None,
    access_token: Annotated[str | None, Cookie()] = None,
) -> str:
    """
    Extract JWT token from request.

    Supports two methods (in order of preference):
    1. HttpOnly cookie named 'access_token'
    2. Authorization header: 'Bearer <token>'
    """
    if access_token:
        return access_token

    if authorization:
        parts = authorization.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    token: Annotated[str, Depends(get_token_from_request)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Validate JWT and return the current authenticated user.

    Raises 401 if:
    - Token is missing, invalid, or expired
    - User no longer exists in database
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    user_id = decode_access_token(token)
    if user_id is None:
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise credentials_exception

    return user


def require_development() -> None:
    """Hide operator-only endpoints outside development."""
    if settings.environment != "development":
        raise NotFoundError("Not found")


def get_job_queue(request: Request) -> JobQueue:
    """The queue started by the application lifespan."""
    return request.app.state.job_queue


def get_upload_pipeline(request: Request) -> FileUploadPipeline:
    return request.app.state.upload_pipeline


def get_card_generator(request: Request) -> CardGenerator:
    return request.app.state.card_generator


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Session factory for work that outlives the request (SSE streams)."""
    return request.app.state.session_factory


# Type alias for dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
JobQueueDep = Annotated[JobQueue, Depends(get_job_queue)]
UploadPipelineDep = Annotated[FileUploadPipeline, Depends(get_upload_pipeline)]
CardGeneratorDep = Annotated[CardGenerator, Depends(get_card_generator)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


# =============================================================================
# QUERY HELPERS (enforce user scoping at query level)
# =============================================================================


async def get_owned_brain(db: AsyncSession, brain_id: UUID, user_id: UUID) -> Brain:
    """Fetch a brain owned by the user, or raise NotFoundError."""
    result = await db.execute(
        select(Brain).where(Brain.id == brain_id, Brain.user_id == user_id)
    )
    brain = result.scalar_one_or_none()
    if brain is None:
        raise NotFoundError("Brain not found")
    return brain


async def get_owned_stream(db: AsyncSession, stream_id: UUID, user_id: UUID) -> Stream:
    result = await db.execute(
        select(Stream)
        .join(Brain, Brain.id == Stream.brain_id)
        .where(Stream.id == stream_id, Brain.user_id == user_id)
    )
    stream = result.scalar_one_or_none()
    if stream is None:
        raise NotFoundError("Stream not found")
    return stream


async def get_owned_card(db: AsyncSession, card_id: UUID, user_id: UUID) -> Card:
    """Fetch an active card in one of the user's brains, or raise NotFoundError."""
    result = await db.execute(
        select(Card)
        .join(Brain, Brain.id == Card.brain_id)
        .where(Card.id == card_id, Card.is_active.is_(True), Brain.user_id == user_id)
    )
    card = result.scalar_one_or_none()
    if card is None:
        raise NotFoundError("Card not found")
    return card
