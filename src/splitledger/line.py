"""LINE platform clients: profile lookup for sign-in and push messages for reminders."""

import logging
from typing import Protocol

import requests

from .errors import AuthenticationError, TransientStorageError
from .models import IdentityProfile

logger = logging.getLogger(__name__)

PROFILE_URL = "https://api.line.me/v2/profile"
PUSH_URL = "https://api.line.me/v2/bot/message/push"


class IdentityProvider(Protocol):
    """Turns a bearer credential into a stable user id and display profile."""

    def fetch_profile(self, token: str) -> IdentityProfile: ...


class LineIdentityProvider:
    """Identity provider backed by the LINE Login profile endpoint."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def fetch_profile(self, token: str) -> IdentityProfile:
        """
        Look up the LINE profile behind an access token.

        Args:
            token: LINE access token from the client

        Returns:
            IdentityProfile with the LINE user id, display name and picture

        Raises:
            AuthenticationError: If the token is missing or rejected
            TransientStorageError: If LINE cannot be reached
        """
        if not token:
            raise AuthenticationError("Missing access token")

        try:
            response = requests.get(
                PROFILE_URL,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientStorageError(f"LINE profile lookup failed: {e}") from e

        if response.status_code in (400, 401, 403):
            raise AuthenticationError("Invalid access token")

        try:
            response.raise_for_status()
            data = response.json()
            return IdentityProfile(
                user_id=data["userId"],
                display_name=data["displayName"],
                avatar_url=data.get("pictureUrl", ""),
            )
        except requests.RequestException as e:
            raise TransientStorageError(f"LINE profile lookup failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise TransientStorageError(f"Invalid response from LINE profile API: {e}") from e


class LineNotifier:
    """Push-message notifier. Never raises; failures are reported as False."""

    def __init__(self, channel_token: str, timeout: float = 10.0):
        self.channel_token = channel_token
        self.timeout = timeout

    def send(self, target_id: str, text: str) -> bool:
        """
        Push a text message to a LINE user or group.

        Returns:
            True if LINE accepted the message
        """
        try:
            response = requests.post(
                PUSH_URL,
                headers={"Authorization": f"Bearer {self.channel_token}"},
                json={"to": target_id, "messages": [{"type": "text", "text": text}]},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("LINE push to %s failed: %s", target_id, e)
            return False
        return True


class LogNotifier:
    """Notifier that only logs. Used when no channel token is configured."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send(self, target_id: str, text: str) -> bool:
        logger.info("Reminder for %s: %s", target_id, text)
        self.sent.append((target_id, text))
        return True
