"""
Short-lived CSRF state for OAuth authorization flows.
"""
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from statementdesk.database import Base


class OAuthState(Base):
    """Single-use state nonce issued when an authorization flow starts."""

    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(
        String(128),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<OAuthState {self.provider} for user {self.user_id}>"
