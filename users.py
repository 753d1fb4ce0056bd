"""
User records: registration seed, profile read and profile update.

Credentials and sessions live in the auth layer; this module only keeps the
public profile fields and the relationship lists.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from errors import ConflictError, ConflictOnCreateError, InvalidOperationError, NotFoundError
from schemas import User
from store import Document, EntityStore

logger = logging.getLogger(__name__)

PUBLIC_USER_FIELDS = ("id", "username", "email")


def public_user(user: Document) -> Dict[str, Any]:
    return {k: user.get(k) for k in PUBLIC_USER_FIELDS}


class UserService:
    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def register_user(self, username: str, email: str) -> Document:
        try:
            user = self.store.create("user", User(username=username, email=email).model_dump())
        except ConflictOnCreateError as e:
            raise ConflictError("User already exists", "user", e.key) from e
        logger.info("Registered user %s", user["id"])
        return user

    def get_user(self, user_id: str) -> Document:
        user = self.store.find_by_id("user", user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        return user

    def _public_users(self, ids: List[str]) -> List[Dict[str, Any]]:
        return [public_user(u) for u in self.store.find_many("user", ids)]

    def get_profile(self, user_id: str) -> Document:
        user = self.get_user(user_id)
        user["bookmarkedResources"] = self.store.find_many("resource", user.get("bookmarkedResources", []))
        user["resources"] = self.store.find_many("resource", user.get("resources", []))
        user["followedUsers"] = self._public_users(user.get("followedUsers", []))
        user["followers"] = self._public_users(user.get("followers", []))
        return user

    def update_profile(self, user_id: str, username: Optional[str] = None, email: Optional[str] = None) -> Document:
        fields = {k: v for k, v in (("username", username), ("email", email)) if v}
        if not fields:
            raise InvalidOperationError("Nothing to update")
        try:
            user = self.store.save("user", {"id": user_id, **fields})
        except ConflictError as e:
            raise ConflictError("Username or email already in use", "user", e.key) from e
        if user is None:
            raise NotFoundError("user", user_id)
        return user
