"""
Relationship engine: follow edges, bookmarks and topic membership.

A follow edge is stored twice, on the follower's `followedUsers` and on the
followed user's `followers`. Both sides are changed with idempotent
set-membership updates issued through the coordinator, so a retried call
never duplicates an entry and never leaves only one side changed once it
reports success. Each side reports whether it actually moved, and a
rollback only reverts the sides that did.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from coordinator import Applied, ConsistencyCoordinator, Step
from errors import InvalidOperationError, NotFoundError
from store import Document, EntityStore

logger = logging.getLogger(__name__)

ACTOR_SIDE = "actor.followedUsers"
TARGET_SIDE = "target.followers"


@dataclass
class FollowSnapshot:
    followed_users: List[str]
    followers: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"followedUsers": self.followed_users, "followers": self.followers}


class RelationshipEngine:
    def __init__(self, store: EntityStore, coordinator: ConsistencyCoordinator) -> None:
        self.store = store
        self.coordinator = coordinator

    def _require(self, collection: str, entity_id: str, message: Optional[str] = None) -> Document:
        doc = self.store.find_by_id(collection, entity_id)
        if doc is None:
            raise NotFoundError(collection, entity_id, message)
        return doc

    def _change(self, collection: str, entity_id: str, field: str, value: str, add: bool) -> Document:
        change = {field: value}
        if add:
            doc = self.store.update_members(collection, {"id": entity_id}, add=change)
        else:
            doc = self.store.update_members(collection, {"id": entity_id}, remove=change)
        if doc is None:
            raise NotFoundError(collection, entity_id)
        return doc

    def change_membership(self, collection: str, entity_id: str, field: str, value: str,
                          add: bool) -> Applied:
        """Like `_change`, but also reports whether `value` was added or removed."""
        change = {field: value}
        before = self.store.update_members(collection, {"id": entity_id},
                                           add=change if add else None,
                                           remove=None if add else change,
                                           return_before=True)
        if before is None:
            raise NotFoundError(collection, entity_id)
        members = list(before.get(field, []))
        changed = (value in members) != add
        if add and changed:
            members.append(value)
        elif not add:
            members = [m for m in members if m != value]
        return Applied({**before, field: members}, changed)

    def _edge_steps(self, actor_id: str, target_id: str, add: bool) -> List[Step]:
        return [
            Step(
                ACTOR_SIDE,
                apply=lambda: self.change_membership("user", actor_id, "followedUsers", target_id, add),
                undo=lambda: self._change("user", actor_id, "followedUsers", target_id, not add),
            ),
            Step(
                TARGET_SIDE,
                apply=lambda: self.change_membership("user", target_id, "followers", actor_id, add),
                undo=lambda: self._change("user", target_id, "followers", actor_id, not add),
            ),
        ]

    def follow_user(self, actor_id: str, target_id: str) -> FollowSnapshot:
        if actor_id == target_id:
            raise InvalidOperationError("You cannot follow yourself", details={"id": actor_id})
        records = self.coordinator.execute(
            "follow_user",
            self._edge_steps(actor_id, target_id, add=True),
            preconditions=[
                lambda: self._require("user", actor_id),
                lambda: self._require("user", target_id, "User to follow not found"),
            ],
        )
        logger.info("User %s follows %s", actor_id, target_id)
        return FollowSnapshot(records[ACTOR_SIDE]["followedUsers"], records[TARGET_SIDE]["followers"])

    def unfollow_user(self, actor_id: str, target_id: str) -> FollowSnapshot:
        if actor_id == target_id:
            raise InvalidOperationError("You cannot unfollow yourself", details={"id": actor_id})
        records = self.coordinator.execute(
            "unfollow_user",
            self._edge_steps(actor_id, target_id, add=False),
            preconditions=[
                lambda: self._require("user", actor_id),
                lambda: self._require("user", target_id, "User to unfollow not found"),
            ],
        )
        logger.info("User %s unfollowed %s", actor_id, target_id)
        return FollowSnapshot(records[ACTOR_SIDE]["followedUsers"], records[TARGET_SIDE]["followers"])

    def bookmark_resource(self, user_id: str, resource_id: str) -> List[str]:
        self._require("resource", resource_id)
        return self._change("user", user_id, "bookmarkedResources", resource_id, add=True)["bookmarkedResources"]

    def unbookmark_resource(self, user_id: str, resource_id: str) -> List[str]:
        return self._change("user", user_id, "bookmarkedResources", resource_id, add=False)["bookmarkedResources"]

    def link_resource(self, topic_id: str, resource_id: str) -> Document:
        """Add a resource to a topic's resource list (no duplicates)."""
        return self.change_membership("topic", topic_id, "resources", resource_id, add=True).record
