"""Interaction state."""
from typing import Any, Dict

from pydantic import BaseModel


class InteractionState(BaseModel):
    """Local view of one interaction's acknowledgment state.

    ``failed`` is terminal: no further delivery is attempted once set.
    """
    interaction_id: str
    deferred:       bool = False
    replied:        bool = False
    editing:        bool = False
    failed:         bool = False
    attempts:       int = 0
    created_at:     float

    @property
    def acknowledged(self) -> bool:
        return self.deferred or self.replied

    def flags(self) -> Dict[str, Any]:
        return self.model_dump(include={"deferred", "replied", "editing", "failed", "attempts"})
