"""
Event envelope — the unit shipped to the collection endpoint.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

EventType = Literal["page", "track", "identify", "group"]


class LibraryInfo(BaseModel):
    name: str
    version: str
    env: Optional[str] = None   # "browser" | "server"


class ScreenInfo(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None
    inner_width: Optional[int] = Field(default=None, alias="innerWidth")
    inner_height: Optional[int] = Field(default=None, alias="innerHeight")
    density: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)


class PageContext(BaseModel):
    path: Optional[str] = None
    referrer: Optional[str] = None
    referring_domain: Optional[str] = None
    host: Optional[str] = None
    search: Optional[str] = None
    title: Optional[str] = None
    url: Optional[str] = None
    encoding: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class Campaign(BaseModel):
    name: Optional[str] = None
    source: Optional[str] = None
    medium: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class Consent(BaseModel):
    category_preferences: dict[str, Any] = Field(alias="categoryPreferences")

    model_config = ConfigDict(populate_by_name=True)


class EventContext(BaseModel):
    library: LibraryInfo
    consent: Optional[Consent] = None
    user_agent: Optional[str] = Field(default=None, alias="userAgent")
    locale: Optional[str] = None
    screen: Optional[ScreenInfo] = None
    traits: Optional[dict[str, Any]] = None
    page: PageContext = PageContext()
    client_ids: Optional[dict[str, Any]] = Field(default=None, alias="clientIds")
    campaign: Campaign = Campaign()

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class EventEnvelope(BaseModel):
    type: EventType
    event: Optional[str] = None
    properties: Optional[dict[str, Any]] = None
    traits: Optional[dict[str, Any]] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    anonymous_id: Optional[str] = Field(default=None, alias="anonymousId")
    group_id: Optional[str] = Field(default=None, alias="groupId")
    context: EventContext
    timestamp: str
    sent_at: str = Field(alias="sentAt")
    message_id: str = Field(alias="messageId")
    write_key: Optional[str] = Field(default=None, alias="writeKey")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @model_validator(mode="after")
    def _check_identity(self) -> "EventEnvelope":
        if not self.user_id and not self.anonymous_id:
            raise ValueError("envelope carries neither userId nor anonymousId")
        if self.type in ("identify", "group") and self.context.traits is not None:
            raise ValueError(f"{self.type} envelope must not carry restored context.traits")
        return self
