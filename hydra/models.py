"""Data models for credential pools and streamed responses."""

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

STATUS_ACTIVE = "ACTIVE"
STATUS_COOLDOWN = "COOLDOWN"

HEALTH_HEALTHY = "HEALTHY"
HEALTH_COOLDOWN = "COOLDOWN"


def cloak(plain_key: str) -> str:
    return base64.urlsafe_b64encode(plain_key[::-1].encode()).decode()


def decloak(cloaked_key: str) -> str:
    return base64.urlsafe_b64decode(cloaked_key.encode()).decode()[::-1]


@dataclass
class CredentialRecord:
    """One API key for one provider, stored in obscured form."""

    id: str
    provider: str
    cloaked_key: str
    status: str = STATUS_ACTIVE
    fails: int = 0
    cooldown_until: float = 0.0
    last_error: Optional[str] = None

    @classmethod
    def from_plain(cls, provider: str, index: int, plain_key: str) -> "CredentialRecord":
        return cls(id=f"{provider}_{index}", provider=provider, cloaked_key=cloak(plain_key))

    @property
    def key(self) -> str:
        return decloak(self.cloaked_key)

    def key_prefix(self) -> str:
        key = self.key
        if len(key) <= 11:
            return key
        return f"{key[:8]}...{key[-3:]}"


@dataclass
class ProviderPool:
    """Credentials for a single provider plus the round-robin cursor."""

    records: List[CredentialRecord] = field(default_factory=list)
    cursor: int = 0

    def active(self) -> List[CredentialRecord]:
        return [record for record in self.records if record.status == STATUS_ACTIVE]


@dataclass(frozen=True)
class Candidate:
    """A concrete (provider, model) backend."""

    provider: str
    model: str

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}"


@dataclass
class StreamChunk:
    """One incremental unit of a streamed response."""

    text: Optional[str] = None
    function_call: Optional[Dict[str, Any]] = None
    grounding_chunks: Optional[List[Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def status(cls, message: str, **flags: Any) -> "StreamChunk":
        return cls(metadata={"systemStatus": message, **flags})

    @property
    def is_status(self) -> bool:
        return self.metadata is not None and "systemStatus" in self.metadata

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.text is not None:
            result["text"] = self.text
        if self.function_call is not None:
            result["functionCall"] = self.function_call
        if self.grounding_chunks is not None:
            result["groundingChunks"] = self.grounding_chunks
        if self.metadata is not None:
            result["metadata"] = self.metadata
        return result


@dataclass
class Attachment:
    """Binary payload sent alongside a prompt (native provider only)."""

    mime_type: str
    data: bytes


@dataclass
class ProviderStatus:
    """Aggregate health of one provider pool, for display only."""

    id: str
    status: str
    key_count: int
    cooldown_remaining: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "status": self.status,
            "keyCount": self.key_count,
            "cooldownRemaining": self.cooldown_remaining,
        }
