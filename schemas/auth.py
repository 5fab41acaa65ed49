"""
Authentication request schemas.
"""

import re
from typing import Optional
from pydantic import BaseModel, Field, field_validator

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+$')
PASSWORD_SPECIALS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
ALLOWED_ROLES = ['superadmin', 'company_admin', 'user']


def validate_password_strength(v: str) -> str:
    """8-128 chars with upper, lower, digit and special character."""
    if len(v) < 8 or len(v) > 128:
        raise ValueError('Password must be 8-128 characters')
    if not re.search(r'[A-Z]', v):
        raise ValueError('Password must contain an uppercase letter')
    if not re.search(r'[a-z]', v):
        raise ValueError('Password must contain a lowercase letter')
    if not re.search(r'\d', v):
        raise ValueError('Password must contain a digit')
    if not any(c in PASSWORD_SPECIALS for c in v):
        raise ValueError('Password must contain a special character')
    return v


def _validate_email(v: str) -> str:
    v = v.strip().lower()
    if not EMAIL_PATTERN.match(v):
        raise ValueError('Invalid email address')
    return v


class LoginRequest(BaseModel):
    """Email/password login, optionally with a captcha token."""
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=200)
    captcha_token: Optional[str] = Field(None, serialization_alias='captchaToken')

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class TwoFactorLoginRequest(BaseModel):
    """Second login step: TOTP code plus the temporary token from step one."""
    code: str = Field(..., serialization_alias='token')
    temp_token: str = Field(..., min_length=1, serialization_alias='tempToken')

    @field_validator('code')
    @classmethod
    def validate_code(cls, v: str) -> str:
        v = v.strip()
        if not re.match(r'^\d{6}$', v):
            raise ValueError('Code must be 6 digits')
        return v


class TwoFactorCodeRequest(BaseModel):
    """TOTP code for 2FA setup or disable."""
    code: str = Field(..., serialization_alias='token')

    @field_validator('code')
    @classmethod
    def validate_code(cls, v: str) -> str:
        v = v.strip()
        if not re.match(r'^\d{6}$', v):
            raise ValueError('Code must be 6 digits')
        return v


class InvitationRequest(BaseModel):
    """Invite a user to a company."""
    email: str = Field(..., max_length=254)
    role: str = Field(default='user')
    company_id: Optional[str] = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _validate_email(v)

    @field_validator('role')
    @classmethod
    def validate_role(cls, v: str) -> str:
        if v.lower() not in ALLOWED_ROLES:
            raise ValueError(f'Role must be one of: {", ".join(ALLOWED_ROLES)}')
        return v.lower()


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=254)

    @field_validator('email')
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _validate_email(v)


class SetPasswordRequest(BaseModel):
    """Token plus new password (reset-password and complete-registration)."""
    token: str = Field(..., min_length=1)
    password: str

    @field_validator('password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class ChangePasswordRequest(BaseModel):
    """Change password for the logged-in user."""
    current_password: str = Field(..., min_length=1, serialization_alias='currentPassword')
    new_password: str = Field(..., serialization_alias='newPassword')

    @field_validator('new_password')
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        return validate_password_strength(v)
