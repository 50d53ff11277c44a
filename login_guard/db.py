"""SQLAlchemy tables backing the durable session store and rate limiter."""

from __future__ import annotations

from sqlalchemy import BigInteger, Integer, String, Text, UniqueConstraint, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


class Base(DeclarativeBase):
    pass


class VerificationSessionRow(Base):
    __tablename__ = "verification_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    challenge_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    # comma-joined, fixed once generated
    choices: Mapped[str | None] = mapped_column(String(64), nullable=True)
    wrong_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    origin_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    origin_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)


class RateLimitCounterRow(Base):
    """Attempt count per (identity, action) inside a window."""

    __tablename__ = "rate_limit_counters"
    __table_args__ = (UniqueConstraint("identity", "action", name="uq_rate_identity_action"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    last_attempt_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


def make_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # handlers run on FastAPI's thread pool; wait on writer locks instead of failing
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, connect_args=connect_args, future=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
