"""Pydantic schemas for the IPFS client."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AuthStrategy(BaseModel):
    """A named header set tried against the node's add endpoint."""
    name:    str
    headers: Dict[str, str] = Field(default_factory=dict)


class ContentAddressUpload(BaseModel):
    cid:        str
    url:        str
    size:       Optional[int] = None
    pinned:     bool = False
    pin_error:  Optional[str] = None
    strategy:   str
    attempt:    int
    elapsed_ms: int


class PinResult(BaseModel):
    pinned: bool
    error:  Optional[str] = None


class HealthProbe(BaseModel):
    name:       str
    success:    bool
    status:     Optional[int] = None
    elapsed_ms: Optional[int] = None
    detail:     Optional[str] = None


class HealthReport(BaseModel):
    node_url:      str
    timestamp:     datetime
    healthy:       bool = False
    accessible:    bool = False
    version:       Optional[str] = None
    last_strategy: Optional[str] = None
    probes:        List[HealthProbe] = Field(default_factory=list)

    def probe(self, name: str) -> Optional[HealthProbe]:
        for p in self.probes:
            if p.name == name:
                return p
        return None

    def summary(self) -> Dict[str, Any]:
        return {p.name: p.success for p in self.probes}
