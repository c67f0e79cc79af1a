"""Webhook registration request/response models."""

from typing import List, Optional

from pydantic import BaseModel, Field

MASKED_SECRET = "********"


class HookConfig(BaseModel):
    url: str = Field(..., description="Where the consumer wants deliveries sent")
    content_type: str = "json"
    secret: Optional[str] = None


class CreateHookRequest(BaseModel):
    """GitHub-style POST /repos/{owner}/{repo}/hooks body."""
    config: HookConfig
    events: Optional[List[str]] = None
    active: bool = True

    class Config:
        json_schema_extra = {
            "example": {
                "config": {
                    "url": "https://coolify.example.com/webhooks/source/github/events",
                    "content_type": "json",
                    "secret": "s3cret",
                },
                "events": ["push"],
                "active": True,
            }
        }


class HookResponse(BaseModel):
    id: int
    url: Optional[str] = None
    config: HookConfig
    events: List[str]
    active: bool
