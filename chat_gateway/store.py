from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

accounts_table = Table(
    "Account",
    metadata,
    Column("user_id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("role", String(32), nullable=False, default="user"),
    Column("sessionToken", String(255), nullable=True),
    Column("createdAt", DateTime, nullable=False, server_default=func.now()),
    Column("lastLogin", DateTime, nullable=True),
)

notifications_table = Table(
    "Notifications",
    metadata,
    Column("notification_id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(255), nullable=False),
    Column("content", Text, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("sender_id", Integer, ForeignKey("Account.user_id"), nullable=False),
    # NULL recipient means the notification is broadcast to every user.
    Column("recipient_id", Integer, ForeignKey("Account.user_id"), nullable=True),
    Column("read", Boolean, nullable=False, default=False),
)


@dataclass(frozen=True, slots=True)
class SessionRecord:
    user_id: int
    username: str
    role: str
    session_token: str | None
    created_at: datetime | None
    last_login: datetime | None


@dataclass(slots=True)
class NotificationListing:
    notifications: list[dict[str, Any]]
    query: str
    params: list[Any]


def create_db_engine(
    database_url: str,
    *,
    pool_size: int | None = None,
) -> Engine:
    options: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    elif pool_size is not None:
        options["pool_size"] = max(1, pool_size)
        options["pool_recycle"] = 1800
    return create_engine(database_url, **options)


class UserStore:
    """Blocking access to the account and notification tables.

    Each method checks a connection out of the pool for the duration of a single
    statement batch and returns it on every exit path. Async callers run these
    methods through ``asyncio.to_thread``.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def get_session(self, user_id: int) -> SessionRecord | None:
        stmt = select(
            accounts_table.c.user_id,
            accounts_table.c.username,
            accounts_table.c.role,
            accounts_table.c.sessionToken,
            accounts_table.c.createdAt,
            accounts_table.c.lastLogin,
        ).where(accounts_table.c.user_id == user_id)
        with self.engine.connect() as connection:
            row = connection.execute(stmt).first()
        if row is None:
            return None
        return SessionRecord(
            user_id=int(row.user_id),
            username=row.username,
            role=row.role,
            session_token=row.sessionToken,
            created_at=row.createdAt,
            last_login=row.lastLogin,
        )

    def get_user_by_username(self, username: str) -> dict[str, Any] | None:
        stmt = select(
            accounts_table.c.user_id,
            accounts_table.c.username,
            accounts_table.c.role,
            accounts_table.c.createdAt,
            accounts_table.c.lastLogin,
        ).where(accounts_table.c.username == username)
        with self.engine.connect() as connection:
            row = connection.execute(stmt).first()
        return dict(row._mapping) if row is not None else None

    def list_users(self) -> list[dict[str, Any]]:
        stmt = select(accounts_table.c.user_id, accounts_table.c.username)
        with self.engine.connect() as connection:
            return [dict(row._mapping) for row in connection.execute(stmt)]

    def list_notifications(self, recipient_id: int | str | None) -> NotificationListing:
        sender = accounts_table.alias("s")
        recipient = accounts_table.alias("r")
        notifications = notifications_table.alias("n")
        stmt = (
            select(
                notifications,
                sender.c.username.label("sender_username"),
                recipient.c.username.label("recipient_username"),
            )
            .select_from(
                notifications.join(
                    sender, notifications.c.sender_id == sender.c.user_id
                ).outerjoin(
                    recipient, notifications.c.recipient_id == recipient.c.user_id
                )
            )
        )
        params: list[Any] = []
        if recipient_id is not None:
            stmt = stmt.where(
                or_(
                    notifications.c.recipient_id == recipient_id,
                    notifications.c.recipient_id.is_(None),
                )
            )
            params.append(recipient_id)
        stmt = stmt.order_by(notifications.c.created_at.desc())
        with self.engine.connect() as connection:
            rows = [dict(row._mapping) for row in connection.execute(stmt)]
        return NotificationListing(notifications=rows, query=str(stmt), params=params)

    def clear_session_token(self, user_id: int) -> None:
        stmt = (
            update(accounts_table)
            .where(accounts_table.c.user_id == user_id)
            .values(sessionToken=None)
        )
        with self.engine.begin() as connection:
            connection.execute(stmt)
