from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from .protocol import ProtocolClient


@dataclass(slots=True)
class ActiveSession:
    instance_id: str
    client: ProtocolClient
    credentials: Any = None
    phone_number: Optional[str] = None
    connected_at: float = field(default_factory=time.time)


class ActiveSessionRegistry:
    """Live protocol clients keyed by instance id.

    Only the lifecycle manager mutates the registry; HTTP handlers read it.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ActiveSession] = {}

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[ActiveSession]:
        return iter(list(self._sessions.values()))

    def get(self, instance_id: str) -> Optional[ActiveSession]:
        return self._sessions.get(instance_id)

    def instance_ids(self) -> list[str]:
        return sorted(self._sessions)

    def insert(self, session: ActiveSession) -> Optional[ActiveSession]:
        previous = self._sessions.get(session.instance_id)
        self._sessions[session.instance_id] = session
        if previous is not None and previous.client is session.client:
            return None
        return previous

    def discard(self, instance_id: str, client: Optional[ProtocolClient] = None) -> Optional[ActiveSession]:
        """Remove an entry; with ``client`` only when it still owns the slot."""
        current = self._sessions.get(instance_id)
        if current is None:
            return None
        if client is not None and current.client is not client:
            return None
        return self._sessions.pop(instance_id)

    def clear(self) -> list[ActiveSession]:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        return sessions


__all__ = ["ActiveSession", "ActiveSessionRegistry"]
