"""
Player command schemas.
"""

from typing import Any, Literal
from pydantic import BaseModel, Field, model_validator

CommandType = Literal['reboot', 'screenshot', 'update', 'url']


class PlayerCommand(BaseModel):
    """Command queued for a player device via POST /players/:id/commands."""
    command_type: CommandType
    payload: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode='after')
    def require_url(self):
        """update and url commands carry an http(s) URL in payload.url."""
        if self.command_type in ('update', 'url'):
            url = self.payload.get('url')
            if not isinstance(url, str) or not url.startswith(('http://', 'https://')):
                raise ValueError(f'{self.command_type} command requires an http(s) url')
        return self
