"""
Authentication router.

Session tokens for the dashboard. Provider OAuth lives in the connections
router; this only identifies the user and reports what their plan unlocks.
"""
import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.config import get_settings
from statementdesk.database import get_db
from statementdesk.models.user import User
from statementdesk.schemas.user import (
    UserCreate,
    UserProfile,
    UserRead,
    Token,
    LoginRequest,
    RefreshRequest,
)
from statementdesk.utils.security import (
    get_password_hash,
    verify_password,
    create_access_token,
    create_refresh_token,
    verify_token,
)
from statementdesk.services.auth import get_current_user, has_bulk_sync
from statementdesk.services.token_store import TokenStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _normalize_email(email: str) -> str:
    return email.strip().lower()


async def _user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == _normalize_email(email)))
    return result.scalar_one_or_none()


def _issue_tokens(user: User) -> Token:
    return Token(
        access_token=create_access_token(data={"sub": user.id}),
        refresh_token=create_refresh_token(data={"sub": user.id}),
    )


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register(
    user_data: UserCreate,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Register a new user on the default plan."""
    if await _user_by_email(db, user_data.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered",
        )

    user = User(
        email=_normalize_email(user_data.email),
        full_name=user_data.full_name,
        hashed_password=get_password_hash(user_data.password),
        subscription_tier=get_settings().default_subscription_tier,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    logger.info("user_registered", user_id=user.id, subscription_tier=user.subscription_tier)
    return user


@router.post("/login", response_model=Token)
async def login(
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> Token:
    """Exchange email and password for a session token pair."""
    user = await _user_by_email(db, credentials.email)

    if not user or not verify_password(credentials.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return _issue_tokens(user)


@router.post("/refresh", response_model=Token)
async def refresh_tokens(
    request: RefreshRequest,
    db: AsyncSession = Depends(get_db),
) -> Token:
    """Rotate the session token pair."""
    payload = verify_token(request.refresh_token, token_type="refresh")
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired refresh token",
        )

    user_id = payload.get("sub")
    user = await db.get(User, user_id) if user_id else None
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )

    return _issue_tokens(user)


@router.get("/me", response_model=UserProfile)
async def get_me(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> UserProfile:
    """Current user, their plan's sync access and connected providers."""
    connections = await TokenStore(db).list_connections(current_user.id)
    return UserProfile(
        **UserRead.model_validate(current_user).model_dump(),
        bulk_sync_enabled=has_bulk_sync(current_user),
        connected_providers=sorted({c.provider for c in connections}),
    )
