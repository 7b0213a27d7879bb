"""Interaction state guard.

State machine per interaction::

    new -> deferred? -> replied -> (follow_up)*

``failed`` is reachable from any state and is terminal.

Routing rules:
    - defer when already deferred or replied is a no-op
    - reply when deferred becomes an edit of the original response
    - reply when already replied becomes a follow-up
    - edit_reply before any acknowledgment becomes a plain reply
    - an "already acknowledged" error from the platform updates the local
      state to match instead of retrying

Every public method holds the guard's lock, so two racing calls cannot both
send the first acknowledgment.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

from weaver.errors import (
    AlreadyAcknowledged,
    InteractionDeliveryFailed,
    InteractionError,
    InteractionExpired,
)
from weaver.state import KeyValueStore

from .schemas import InteractionState

logger = logging.getLogger(__name__)

DEFAULT_LIFETIME_SECONDS = 15 * 60

Payload = Dict[str, Any]


class InteractionTransport(Protocol):
    """Delivery calls for one interaction.

    Implementations raise ``AlreadyAcknowledged`` when the platform reports
    the interaction was already acknowledged, and
    ``InteractionDeliveryFailed`` for any other failure.
    """

    async def defer(self, ephemeral: bool = True) -> None: ...

    async def reply(self, payload: Payload) -> None: ...

    async def edit_reply(self, payload: Payload) -> None: ...

    async def follow_up(self, payload: Payload) -> None: ...


class InteractionGuard:
    """Serializes and routes responses for one interaction."""

    def __init__(
        self,
        transport: InteractionTransport,
        interaction_id: str,
        lifetime_seconds: float = DEFAULT_LIFETIME_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        state: Optional[InteractionState] = None,
    ) -> None:
        self.transport = transport
        self.interaction_id = interaction_id
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock
        self.state = state or InteractionState(interaction_id=interaction_id, created_at=clock())
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @property
    def age(self) -> float:
        return self._clock() - self.state.created_at

    def is_expired(self) -> bool:
        return self.age > self.lifetime_seconds

    def can_respond(self) -> bool:
        if self.is_expired():
            logger.warning("Interaction %s has expired", self.interaction_id)
            return False
        if self.state.failed:
            logger.warning("Interaction %s is in failed state", self.interaction_id)
            return False
        return True

    def _ensure_can_respond(self, action: str) -> None:
        if self.is_expired():
            raise InteractionExpired(f"Cannot {action}: interaction {self.interaction_id} expired")
        if self.state.failed:
            raise InteractionDeliveryFailed(
                f"Cannot {action}: interaction {self.interaction_id} is in failed state"
            )

    # ------------------------------------------------------------------
    # Public verbs
    # ------------------------------------------------------------------

    async def defer(self, ephemeral: bool = True) -> bool:
        async with self._lock:
            return await self._defer(ephemeral)

    async def reply(self, payload: Payload) -> bool:
        async with self._lock:
            return await self._reply(payload)

    async def edit_reply(self, payload: Payload) -> bool:
        async with self._lock:
            return await self._edit_reply(payload)

    async def follow_up(self, payload: Payload) -> bool:
        async with self._lock:
            return await self._follow_up(payload)

    async def respond(self, payload: Payload) -> bool:
        """Send *payload* with whichever verb the current state calls for.

        Returns False instead of raising when delivery is impossible or fails.
        """
        async with self._lock:
            if not self.can_respond():
                logger.error("Cannot respond to interaction %s: expired or failed", self.interaction_id)
                return False
            try:
                if self.state.deferred and not self.state.editing:
                    return await self._edit_reply(payload)
                if not self.state.acknowledged:
                    return await self._reply(payload)
                if self.state.replied:
                    return await self._follow_up(payload)
                return await self._edit_reply(payload)
            except InteractionError as exc:
                logger.error("Failed to respond to interaction %s: %s", self.interaction_id, exc)
                return False

    def stats(self) -> Dict[str, Any]:
        return {
            "id": self.interaction_id,
            "age": self.age,
            "expired": self.is_expired(),
            "state": self.state.flags(),
            "can_respond": self.can_respond(),
        }

    # ------------------------------------------------------------------
    # Unlocked implementations (callers hold the lock)
    # ------------------------------------------------------------------

    async def _defer(self, ephemeral: bool) -> bool:
        self._ensure_can_respond("defer")
        if self.state.acknowledged:
            logger.debug("Interaction %s already acknowledged, skipping defer", self.interaction_id)
            return True

        self.state.attempts += 1
        try:
            await self.transport.defer(ephemeral=ephemeral)
        except AlreadyAcknowledged:
            logger.warning("Interaction %s was already acknowledged, updating state", self.interaction_id)
            self.state.deferred = True
            return True
        except InteractionError:
            self.state.failed = True
            raise
        self.state.deferred = True
        return True

    async def _reply(self, payload: Payload) -> bool:
        self._ensure_can_respond("reply")
        if self.state.replied:
            return await self._follow_up(payload)
        if self.state.deferred:
            return await self._edit_reply(payload)

        self.state.attempts += 1
        try:
            await self.transport.reply(payload)
        except AlreadyAcknowledged:
            logger.warning("Interaction %s was already acknowledged, editing instead", self.interaction_id)
            self.state.deferred = True
            return await self._edit_reply(payload)
        except InteractionError:
            self.state.failed = True
            raise
        self.state.replied = True
        return True

    async def _edit_reply(self, payload: Payload) -> bool:
        self._ensure_can_respond("edit reply")
        if not self.state.acknowledged:
            return await self._reply(payload)

        self.state.attempts += 1
        self.state.editing = True
        try:
            await self.transport.edit_reply(payload)
        except InteractionError:
            self.state.failed = True
            raise
        finally:
            self.state.editing = False
        return True

    async def _follow_up(self, payload: Payload) -> bool:
        self._ensure_can_respond("follow up")
        self.state.attempts += 1
        await self.transport.follow_up(payload)
        return True


class InteractionRegistry:
    """Tracks interaction states in a TTL store so memory stays bounded.

    Entries live for the interaction lifetime; the store's sweep removes
    them afterwards.
    """

    def __init__(
        self,
        store: KeyValueStore,
        lifetime_seconds: float = DEFAULT_LIFETIME_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    async def create_guard(self, transport: InteractionTransport, interaction_id: str) -> InteractionGuard:
        guard = InteractionGuard(
            transport,
            interaction_id,
            lifetime_seconds=self.lifetime_seconds,
            clock=self._clock,
        )
        await self._store.put(interaction_id, guard.state, ttl_seconds=self.lifetime_seconds)
        logger.debug("Tracking interaction %s", interaction_id)
        return guard

    async def get(self, interaction_id: str) -> Optional[InteractionState]:
        return await self._store.get(interaction_id)

    async def release(self, interaction_id: str) -> None:
        await self._store.delete(interaction_id)

    async def sweep(self) -> int:
        return await self._store.sweep()

    async def stats(self) -> Dict[str, int]:
        states = await self._store.values()
        return {
            "total": len(states),
            "deferred": sum(1 for s in states if s.deferred),
            "replied": sum(1 for s in states if s.replied),
            "editing": sum(1 for s in states if s.editing),
            "failed": sum(1 for s in states if s.failed),
        }
