from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from multidict import CIMultiDict


class UpstreamTarget(str, Enum):
    LOCAL_BACKEND = "local_backend"
    ALTERNATE_GATEWAY = "alternate_gateway"
    REMOTE_MANAGEMENT = "remote_management"


@dataclass(frozen=True, slots=True)
class RewriteDecision:
    upstream: UpstreamTarget
    url: str
    body: bytes
    headers: CIMultiDict[str] = field(default_factory=CIMultiDict)
    max_tokens: int | None = None
    budget: int | None = None
    model: str | None = None
    rewritten: bool = False

    @property
    def is_gateway(self) -> bool:
        return self.upstream == UpstreamTarget.ALTERNATE_GATEWAY
