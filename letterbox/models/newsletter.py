"""
Newsletter storage models.

A UserItem points at exactly one content location: a SharedContent row
(public, deduplicated across users) or a private blob key.
"""

from datetime import datetime
from typing import Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

NewsletterSource = Literal["email", "gmail", "manual", "import"]
ContentStatus = Literal["available", "locked", "missing"]


class StoreNewsletterRequest(BaseModel):
    user_id: str
    sender_id: str
    folder_id: Optional[str] = None
    subject: str
    sender_email: str
    sender_name: Optional[str] = None
    received_at: datetime
    html_content: Optional[str] = None
    text_content: Optional[str] = None
    is_private: bool = False
    source: NewsletterSource = "email"
    message_id: Optional[str] = None


class SharedContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    content_hash: str
    blob_key: str
    subject: str
    sender_email: str
    sender_name: Optional[str] = None
    first_received_at: datetime
    reader_count: int
    summary: Optional[str] = None
    summary_generated_at: Optional[datetime] = None


class UserItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    sender_id: str
    folder_id: Optional[str] = None
    subject: str
    sender_email: str
    sender_name: Optional[str] = None
    received_at: datetime
    is_private: bool
    shared_content_id: Optional[str] = None
    private_blob_key: Optional[str] = None
    content_hash: str
    message_id: Optional[str] = None
    source: str
    is_locked_by_plan: bool = False
    summary: Optional[str] = None
    summary_generated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _exactly_one_pointer(self):
        if (self.shared_content_id is None) == (self.private_blob_key is None):
            raise ValueError("exactly one of shared_content_id or private_blob_key must be set")
        return self


class UserItemView(BaseModel):
    """Item as seen by its owner, with content availability resolved."""
    model_config = ConfigDict(frozen=True)

    item: UserItem
    content_status: ContentStatus
    content_url: Optional[str] = None


class StoredResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    skipped: Literal[False] = False
    user_item_id: str
    locked: bool
    blob_key: str
    shared_content_id: Optional[str] = None


class SkippedResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    skipped: Literal[True] = True
    reason: Literal["plan_limit", "duplicate"]
    hard_cap: Optional[int] = None
    duplicate_reason: Optional[Literal["message_id", "content_hash"]] = None
    existing_id: Optional[str] = None


StoreResult = Union[StoredResult, SkippedResult]


class SummaryResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    summary: Optional[str] = None
    is_shared: bool = False
    generated_at: Optional[datetime] = None
    cached: bool = Field(default=False, description="True when no provider call was made")
