"""Player facade: CRUD plus device commands."""

import logging
from typing import Optional

from pydantic import ValidationError as SchemaValidationError

from api.base import EntityAPI, validation_failure
from core.errors import ApiResult, safe_result
from schemas.players import PlayerCommand

logger = logging.getLogger(__name__)


class PlayerAPI(EntityAPI):
    family = "players"
    path = "/players"
    record_key = "player"

    async def send_command(self, player_id: str, command_type: str, payload: Optional[dict] = None) -> ApiResult:
        """
        Queue a command for a player device.

        Args:
            player_id: Target player
            command_type: reboot, screenshot, update (payload.url = APK) or url (payload.url = page)
            payload: Command arguments
        """
        try:
            command = PlayerCommand(command_type=command_type, payload=payload or {})
        except SchemaValidationError as e:
            return validation_failure(e)

        try:
            result = await self._gateway.request(
                "POST", f"{self.path}/{player_id}/commands", command.model_dump()
            )
            if result.ok:
                logger.info(f"Queued {command.command_type} for player {player_id}")
            return result
        except Exception as e:
            return safe_result(e, f"send {command_type} command")
