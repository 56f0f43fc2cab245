import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ChorusError

logger = logging.getLogger(__name__)


class TelegramError(ChorusError):
    def __init__(self, description: str, error_code: Optional[int] = None) -> None:
        super().__init__(description)
        self.description = description
        self.error_code = error_code


class TelegramClient:
    """Minimal async Bot API client: long polling plus the message calls the bridge needs."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or os.environ.get("TELEGRAM_API_URL", "https://api.telegram.org")).rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._client.post(f"{self.base_url}/bot{self._token}/{method}", json=payload or {})
        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise TelegramError(f"{method}: non-JSON response", response.status_code)
        if not data.get("ok"):
            raise TelegramError(data.get("description") or f"{method} failed", data.get("error_code"))
        return data.get("result")

    async def get_me(self) -> Dict[str, Any]:
        return await self.call("getMe")

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return await self.call("getUpdates", payload) or []

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self.call("sendMessage", payload)

    async def edit_message_text(
        self, chat_id: int, message_id: int, text: str, parse_mode: Optional[str] = None
    ) -> Any:
        payload: Dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self.call("editMessageText", payload)

    async def delete_message(self, chat_id: int, message_id: int) -> Any:
        return await self.call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def set_my_commands(self, commands: List[Dict[str, str]]) -> Any:
        return await self.call("setMyCommands", {"commands": commands})

    async def close(self) -> None:
        await self._client.aclose()
