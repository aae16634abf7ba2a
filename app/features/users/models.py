"""
User model with ULID primary keys.
"""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, UlidPrimaryKeyMixin


class User(UlidPrimaryKeyMixin, Base, TimestampMixin):
    """
    User model representing an identity known to the access-control core.

    Credentials live in the external identity store; ``credential_ref`` is the
    opaque subject that store puts in the tokens it issues.
    """
    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(150), unique=True, nullable=False, index=True)

    # Subject of the identity-store account (the JWT ``sub`` claim)
    credential_ref: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True, index=True)

    groups: Mapped[list["Group"]] = relationship(  # type: ignore # noqa: F821
        "Group",
        secondary="user_groups",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username!r})>"
