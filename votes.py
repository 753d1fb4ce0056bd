"""
Vote aggregation engine.

Each resource has at most one Vote record holding two disjoint id sets,
`upvoters` and `downvoters`. Records are created lazily on first read or
first vote. The unique index on `vote.resource` decides concurrent first
accesses: the loser of the insert race re-reads the winner's record.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from errors import ConflictOnCreateError, InvalidOperationError, NotFoundError, StoreUnavailableError
from schemas import Vote
from store import Document, EntityStore

logger = logging.getLogger(__name__)

# direction -> (set to join, set to leave)
DIRECTIONS = {
    "up": ("upvoters", "downvoters"),
    "down": ("downvoters", "upvoters"),
}


@dataclass(frozen=True)
class Tally:
    upvotes: int
    downvotes: int

    @classmethod
    def of(cls, vote: Document) -> Tally:
        return cls(len(vote.get("upvoters", [])), len(vote.get("downvoters", [])))

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes

    def to_dict(self) -> Dict[str, Any]:
        return {"upvotes": self.upvotes, "downvotes": self.downvotes}


def user_vote(vote: Document, user_id: str) -> Optional[str]:
    for direction, (members, _) in DIRECTIONS.items():
        if user_id in vote.get(members, []):
            return direction
    return None


class VoteEngine:
    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def _require_resource(self, resource_id: str) -> None:
        if self.store.find_by_id("resource", resource_id) is None:
            raise NotFoundError("resource", resource_id)

    def get_or_create_vote(self, resource_id: str) -> Document:
        vote = self.store.find_one("vote", {"resource": resource_id})
        if vote is not None:
            return vote
        try:
            vote = self.store.create("vote", Vote(resource=resource_id).model_dump())
            logger.debug("Created vote record for resource %s", resource_id)
            return vote
        except ConflictOnCreateError:
            logger.debug("Vote record for resource %s created concurrently, re-reading", resource_id)
        vote = self.store.find_one("vote", {"resource": resource_id})
        if vote is None:
            raise StoreUnavailableError("Vote record vanished after create conflict",
                                        details={"resource": resource_id})
        return vote

    def tally(self, resource_id: str) -> Tally:
        self._require_resource(resource_id)
        return Tally.of(self.get_or_create_vote(resource_id))

    def annotate(self, resources: List[Document]) -> List[Document]:
        """Return copies of `resources` with upvotes/downvotes filled in."""
        annotated = []
        for resource in resources:
            tally = Tally.of(self.get_or_create_vote(resource["id"]))
            annotated.append({**resource, **tally.to_dict()})
        return annotated

    def cast_vote(self, resource_id: str, user_id: str, direction: str) -> Document:
        """Record `user_id`'s vote and drop any opposite vote in the same write.

        Re-casting the same direction leaves the record unchanged.
        Returns the updated Vote record.
        """
        if direction not in DIRECTIONS:
            raise InvalidOperationError("Vote direction must be 'up' or 'down'",
                                        details={"direction": direction})
        self._require_resource(resource_id)
        self.get_or_create_vote(resource_id)
        join, leave = DIRECTIONS[direction]
        vote = self.store.update_members("vote", {"resource": resource_id},
                                         add={join: user_id}, remove={leave: user_id})
        if vote is None:
            raise NotFoundError("vote", resource_id)
        logger.info("User %s voted %s on resource %s", user_id, direction, resource_id)
        return vote

    def retract_vote(self, resource_id: str, user_id: str) -> Document:
        self._require_resource(resource_id)
        self.get_or_create_vote(resource_id)
        vote = self.store.update_members("vote", {"resource": resource_id},
                                         remove={"upvoters": user_id, "downvoters": user_id})
        if vote is None:
            raise NotFoundError("vote", resource_id)
        return vote
