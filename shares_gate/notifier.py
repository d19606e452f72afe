import abc
import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from .errors import NotifierError
from .models import Permission

logger = logging.getLogger(__name__)

FULL_PERMISSIONS: Dict[str, bool] = {
    "can_send_messages": True,
    "can_send_audios": True,
    "can_send_documents": True,
    "can_send_photos": True,
    "can_send_videos": True,
    "can_send_video_notes": True,
    "can_send_voice_notes": True,
    "can_send_polls": True,
    "can_send_other_messages": True,
    "can_add_web_page_previews": True,
}
NO_PERMISSIONS: Dict[str, bool] = {key: False for key in FULL_PERMISSIONS}


class AccessNotifier(abc.ABC):
    @abc.abstractmethod
    async def set_permissions(
        self, bot_token: str, chat_id: str, external_identity: str, permission: Permission
    ) -> None:
        """Raises ``NotifierError`` when the community platform rejects the call."""


class TelegramNotifier(AccessNotifier):
    """Mutes or unmutes a chat member through the Bot API ``restrictChatMember``."""

    def __init__(self, api_url: str = "https://api.telegram.org", timeout_sec: int = 15):
        self.api_url = api_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "TelegramNotifier":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def build_payload(
        self, chat_id: str, external_identity: str, permission: Permission
    ) -> Dict[str, Any]:
        try:
            user_id = int(str(external_identity).strip())
        except ValueError as e:
            raise NotifierError(f"telegram user id must be numeric: {external_identity!r}") from e
        permissions = FULL_PERMISSIONS if permission == Permission.FULL else NO_PERMISSIONS
        return {
            "chat_id": chat_id,
            "user_id": user_id,
            "permissions": dict(permissions),
            "use_independent_chat_permissions": True,
        }

    async def set_permissions(
        self, bot_token: str, chat_id: str, external_identity: str, permission: Permission
    ) -> None:
        if not self._session:
            raise RuntimeError("Telegram session is not initialized")
        payload = self.build_payload(chat_id, external_identity, permission)
        url = f"{self.api_url}/bot{bot_token}/restrictChatMember"
        try:
            async with self._session.post(url, json=payload) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            raise NotifierError(f"restrictChatMember request failed: {e!r}") from e
        except asyncio.TimeoutError as e:
            raise NotifierError("restrictChatMember timed out") from e
        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else data
            raise NotifierError(f"restrictChatMember rejected: {description}")
        logger.info(
            "telegram permissions for %s in %s set to %s", external_identity, chat_id, permission.value
        )
