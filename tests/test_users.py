"""
Tests for registration and profiles.
"""

import pytest
from bson import ObjectId

from errors import ConflictError, InvalidOperationError, NotFoundError


class TestUsers:
    def test_register(self, users):
        user = users.register_user("dana", "dana@example.com")

        assert user["username"] == "dana"
        assert user["followedUsers"] == []
        assert user["followers"] == []
        assert user["bookmarkedResources"] == []

    def test_register_duplicate(self, users, alice):
        with pytest.raises(ConflictError):
            users.register_user("alice", "other@example.com")

    def test_profile_populates_relations(self, users, relationships, alice, bob, resource):
        relationships.follow_user(alice["id"], bob["id"])
        relationships.bookmark_resource(alice["id"], resource["id"])

        profile = users.get_profile(alice["id"])

        assert profile["followedUsers"] == [{"id": bob["id"], "username": "bob", "email": "bob@example.com"}]
        assert profile["followers"] == []
        assert profile["bookmarkedResources"][0]["id"] == resource["id"]
        assert profile["resources"][0]["id"] == resource["id"]

    def test_profile_missing(self, users):
        with pytest.raises(NotFoundError):
            users.get_profile(str(ObjectId()))

    def test_update_profile(self, users, alice):
        updated = users.update_profile(alice["id"], username="alice2")

        assert updated["username"] == "alice2"
        assert updated["email"] == "alice@example.com"

    def test_update_profile_taken(self, users, alice, bob):
        with pytest.raises(ConflictError) as exc_info:
            users.update_profile(alice["id"], email="bob@example.com")

        assert exc_info.value.message == "Username or email already in use"

    def test_update_profile_nothing(self, users, alice):
        with pytest.raises(InvalidOperationError):
            users.update_profile(alice["id"])
