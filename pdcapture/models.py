from typing import Any, Literal, Optional

from pydantic import BaseModel


class Capture(BaseModel):
    id: str
    url: str
    source_url: str
    label: str
    media_type: Literal["audio", "video"] = "video"


class RequestObservation(BaseModel):
    url: str
    tab_id: Any = -1


class TabUpdate(BaseModel):
    status: Optional[str] = None


class AllowedHosts(BaseModel):
    hosts: list[str]
