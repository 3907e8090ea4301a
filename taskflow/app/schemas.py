from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

TaskId = Union[int, str]


class User(BaseModel):
    id: str
    email: Optional[str] = None


class Session(BaseModel):
    """Token bundle issued by the auth provider."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: str = "bearer"
    user: User

    def is_expired(self, now: float, leeway: int = 30) -> bool:
        return bool(self.expires_at) and now + leeway >= float(self.expires_at)


class Task(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: TaskId
    title: str
    description: Optional[str] = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    image_url: Optional[str] = None
    email: Optional[str] = None


class TaskCreate(BaseModel):
    """Row sent to the backend on create."""

    title: str
    description: str = ""
    email: Optional[str] = None
    image_url: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("title must not be empty")
        return v


class DescriptionUpdate(BaseModel):
    description: str


class ChangeEvent(BaseModel):
    """One change-feed notification for a table."""

    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    table: Optional[str] = None
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Optional[str] = None


class Message(BaseModel):
    kind: Literal["success", "error"]
    text: str


class TaskListResponse(BaseModel):
    items: list[Task]
    total: int
    scope: str
    form_state: str
    last_error: Optional[str] = None


class SessionInfo(BaseModel):
    view: Literal["loading", "auth", "dashboard"]
    email: Optional[str] = None
    auth_mode: Optional[str] = None
    message: Optional[Message] = None
