"""
Credential store: the single source of truth for "am I logged in".

Holds the access token, optional refresh token and user identity, backed by
the durable store so a session survives restarts. All writes go through
set() and clear(); every other component reads through this class.

Usage:
    store = CredentialStore(durable)
    store.load()
    unsubscribe = store.on_change(lambda creds: print("logged in" if creds else "logged out"))
    store.set(token, refresh_token, user)
"""

import json
import logging
from typing import Callable, Optional, Union

from core.durable_store import DurableStore, StorageKeys
from core.types import Credentials, User

logger = logging.getLogger(__name__)

CredentialListener = Callable[[Optional[Credentials]], None]


class CredentialStore:
    """Persists credentials atomically and notifies listeners on change."""

    def __init__(self, durable: DurableStore):
        self._durable = durable
        self._current: Optional[Credentials] = None
        self._listeners: list[CredentialListener] = []

    def load(self) -> Optional[Credentials]:
        """
        Restore credentials from durable storage.

        A token without a decodable user is treated as absent and the
        leftovers are cleaned up.
        """
        token = self._durable.get(StorageKeys.AUTH_TOKEN)
        user_data = self._durable.get_json(StorageKeys.USER)
        if not token:
            self._current = None
            return None

        try:
            user = User.from_dict(user_data)
        except ValueError:
            logger.warning("Stored token has no valid user, discarding credentials")
            self._durable.delete(*StorageKeys.CREDENTIAL_KEYS)
            self._current = None
            return None

        self._current = Credentials(
            access_token=token,
            user=user,
            refresh_token=self._durable.get(StorageKeys.REFRESH_TOKEN),
        )
        logger.info(f"Restored session for {user.email}")
        return self._current

    def set(self, access_token: str, refresh_token: Optional[str], user: Union[User, dict]) -> Credentials:
        """Store the credential triple in one transaction and notify listeners."""
        if not access_token:
            raise ValueError("access_token is required")
        if isinstance(user, dict):
            user = User.from_dict(user)

        values = {
            StorageKeys.AUTH_TOKEN: access_token,
            StorageKeys.USER: json.dumps(user.to_dict()),
            StorageKeys.USER_ROLE: user.role,
        }
        delete = []
        if refresh_token:
            values[StorageKeys.REFRESH_TOKEN] = refresh_token
        else:
            delete.append(StorageKeys.REFRESH_TOKEN)
        if user.company_id is not None:
            values[StorageKeys.COMPANY_ID] = user.company_id
        else:
            delete.append(StorageKeys.COMPANY_ID)

        self._durable.replace(values, delete=delete)
        self._current = Credentials(access_token=access_token, user=user, refresh_token=refresh_token or None)
        logger.debug(f"Credentials stored for {user.email}")
        self._notify(self._current)
        return self._current

    def clear(self) -> bool:
        """Remove credentials. Returns True if any were present."""
        had_credentials = self._current is not None
        self._durable.delete(*StorageKeys.CREDENTIAL_KEYS)
        self._current = None
        if had_credentials:
            logger.info("Credentials cleared")
            self._notify(None)
        return had_credentials

    @property
    def current(self) -> Optional[Credentials]:
        return self._current

    @property
    def is_authenticated(self) -> bool:
        return self._current is not None

    def get_token(self) -> Optional[str]:
        return self._current.access_token if self._current else None

    def get_refresh_token(self) -> Optional[str]:
        return self._current.refresh_token if self._current else None

    def get_user(self) -> Optional[User]:
        return self._current.user if self._current else None

    def on_change(self, callback: CredentialListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, credentials: Optional[Credentials]) -> None:
        for listener in list(self._listeners):
            try:
                listener(credentials)
            except Exception:
                logger.exception("Credential listener failed")
