from __future__ import annotations

import sqlite3
from dataclasses import dataclass

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"
# On-device model replies are stored under their own role.
ROLE_MODEL = "model"

KNOWN_ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_MODEL})


@dataclass(frozen=True)
class ChatSession:
    id: str
    user_id: str
    title: str
    is_offline_only: bool
    last_updated: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ChatSession:
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=str(row["title"]),
            is_offline_only=bool(row["is_offline_only"]),
            last_updated=int(row["last_updated"]),
        )

    def to_params(self) -> tuple[str, str, str, int, int]:
        return (
            self.id,
            self.user_id,
            self.title,
            1 if self.is_offline_only else 0,
            int(self.last_updated),
        )


@dataclass(frozen=True)
class Message:
    id: str
    session_id: str
    role: str
    content: str
    timestamp: int
    image_path: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Message:
        return cls(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            role=str(row["role"]),
            content=str(row["content"]),
            timestamp=int(row["timestamp"]),
            image_path=row["image_path"],
        )

    def to_params(self) -> tuple[str, str, str, str, int, str | None]:
        return (
            self.id,
            self.session_id,
            self.role,
            self.content,
            int(self.timestamp),
            self.image_path,
        )
