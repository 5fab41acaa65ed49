"""
Realtime push message schema.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class ServerMessage(BaseModel):
    """JSON object pushed over the WebSocket. Unknown fields are kept."""
    model_config = ConfigDict(extra='allow')

    type: str = Field(..., min_length=1)
    data: Any = None
    timestamp: Optional[float] = None

    def body(self) -> Any:
        """Event payload: `data` when present, otherwise the extra fields."""
        if self.data is not None:
            return self.data
        return dict(self.model_extra or {})
