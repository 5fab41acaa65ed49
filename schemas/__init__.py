"""
Pydantic schemas for outbound requests and inbound push messages.

Facades validate input with these before anything reaches the network and
turn pydantic errors into `validation` results.
"""

from schemas.auth import (
    LoginRequest,
    TwoFactorLoginRequest,
    TwoFactorCodeRequest,
    InvitationRequest,
    ForgotPasswordRequest,
    SetPasswordRequest,
    ChangePasswordRequest,
    validate_password_strength,
)
from schemas.players import PlayerCommand
from schemas.messages import ServerMessage

__all__ = [
    # Auth
    "LoginRequest",
    "TwoFactorLoginRequest",
    "TwoFactorCodeRequest",
    "InvitationRequest",
    "ForgotPasswordRequest",
    "SetPasswordRequest",
    "ChangePasswordRequest",
    "validate_password_strength",
    # Players
    "PlayerCommand",
    # Messages
    "ServerMessage",
]
