"""Community voting collaborator used when a permission is escalated."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from uuid import uuid4


class CommunityVoting(ABC):
    @abstractmethod
    def propose_vote(self, permission_id: str, reasoning: str) -> str:
        """Open a vote on the permission and return the vote id."""

    @abstractmethod
    def withdraw_vote(self, vote_id: str) -> None:
        """Close a vote that no committed escalation refers to."""


class InMemoryCommunityVoting(CommunityVoting):
    """Records proposals without contacting any governance backend."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.proposals: dict[str, tuple[str, str]] = {}

    def propose_vote(self, permission_id: str, reasoning: str) -> str:
        vote_id = f"vote_{uuid4().hex}"
        with self._lock:
            self.proposals[vote_id] = (permission_id, reasoning)
        return vote_id

    def withdraw_vote(self, vote_id: str) -> None:
        with self._lock:
            self.proposals.pop(vote_id, None)
