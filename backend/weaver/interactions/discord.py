"""Discord interaction transport over the REST API.

Callback types:
    4 — CHANNEL_MESSAGE_WITH_SOURCE (reply)
    5 — DEFERRED_CHANNEL_MESSAGE_WITH_SOURCE (defer)

Edits go to ``PATCH /webhooks/{app}/{token}/messages/@original`` and
follow-ups to ``POST /webhooks/{app}/{token}``.  Discord error 40060 means
the interaction was already acknowledged.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from weaver.errors import AlreadyAcknowledged, InteractionDeliveryFailed, InteractionExpired

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://discord.com/api/v10"

CALLBACK_REPLY = 4
CALLBACK_DEFER = 5
EPHEMERAL_FLAG = 64

ERROR_ALREADY_ACKNOWLEDGED = 40060
ERROR_UNKNOWN_INTERACTION = 10062


def _with_flags(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Copy *payload*, turning the ``ephemeral`` key (default True) into flags."""
    data = dict(payload)
    if data.pop("ephemeral", True):
        data["flags"] = data.get("flags", 0) | EPHEMERAL_FLAG
    return data


class DiscordInteractionTransport:
    """Delivers responses for one Discord interaction.

    Args:
        interaction_id: Interaction snowflake.
        token:          Interaction token (valid for 15 minutes).
        application_id: Application id used by the webhook endpoints.
        api_base:       Discord API base URL.
        bot_token:      Optional bot token sent as ``Authorization``.
        transport:      Optional httpx transport (tests).
    """

    def __init__(
        self,
        interaction_id: str,
        token: str,
        application_id: str,
        api_base: str = DEFAULT_API_BASE,
        bot_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.interaction_id = interaction_id
        self._token = token
        self.application_id = application_id
        self._api_base = api_base.rstrip("/")
        self._bot_token = bot_token
        self._timeout = timeout
        self._transport = transport

    async def _send(self, method: str, path: str, body: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self._bot_token:
            headers["Authorization"] = f"Bot {self._bot_token}"
        try:
            async with httpx.AsyncClient(
                base_url=self._api_base, timeout=self._timeout, transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise InteractionDeliveryFailed(
                f"Discord request for interaction {self.interaction_id} failed",
                technical_detail=str(exc),
            ) from exc

        if response.is_success:
            return

        code = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code")
        detail = f"HTTP {response.status_code}: {response.text[:200]}"
        if code == ERROR_ALREADY_ACKNOWLEDGED:
            raise AlreadyAcknowledged(
                f"Interaction {self.interaction_id} has already been acknowledged",
                technical_detail=detail,
            )
        if code == ERROR_UNKNOWN_INTERACTION:
            raise InteractionExpired(
                f"Interaction {self.interaction_id} is unknown or expired",
                technical_detail=detail,
            )
        logger.error("Discord %s %s failed: %s", method, path, detail)
        raise InteractionDeliveryFailed(
            f"Discord rejected {method} for interaction {self.interaction_id}",
            technical_detail=detail,
        )

    @property
    def _callback_path(self) -> str:
        return f"/interactions/{self.interaction_id}/{self._token}/callback"

    @property
    def _webhook_path(self) -> str:
        return f"/webhooks/{self.application_id}/{self._token}"

    async def defer(self, ephemeral: bool = True) -> None:
        data = {"flags": EPHEMERAL_FLAG} if ephemeral else {}
        await self._send("POST", self._callback_path, {"type": CALLBACK_DEFER, "data": data})

    async def reply(self, payload: Dict[str, Any]) -> None:
        await self._send("POST", self._callback_path, {"type": CALLBACK_REPLY, "data": _with_flags(payload)})

    async def edit_reply(self, payload: Dict[str, Any]) -> None:
        data = dict(payload)
        data.pop("ephemeral", None)
        await self._send("PATCH", f"{self._webhook_path}/messages/@original", data)

    async def follow_up(self, payload: Dict[str, Any]) -> None:
        await self._send("POST", self._webhook_path, _with_flags(payload))
