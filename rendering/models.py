from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class RenderStatus(Enum):
    SUCCESS = "SUCCESS"
    RENDER_TIMEOUT = "RENDER_TIMEOUT"
    RENDER_FAILED = "RENDER_FAILED"
    INELIGIBLE_TYPE = "INELIGIBLE_TYPE"


@dataclass(frozen=True)
class RenderedPage:
    """Raw backend output before eligibility checks."""
    html: str
    final_url: str
    status_code: int = 200
    content_type: Optional[str] = "text/html"


@dataclass(frozen=True)
class RenderOutcome:
    """
    Immutable result of one render call.
    Invariant: html is set if and only if status is SUCCESS.
    """
    url: str
    status: RenderStatus
    html: Optional[str] = None
    final_url: Optional[str] = None
    status_code: int = 0
    error: Optional[str] = None
    render_duration_ms: int = 0
    rendering_version: str = "v1"
    render_timestamp: Optional[datetime] = None

    def __post_init__(self):
        if self.render_timestamp is None:
            object.__setattr__(self, "render_timestamp", datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status is RenderStatus.SUCCESS
