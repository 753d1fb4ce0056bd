"""
Tests for the vote aggregation engine.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from bson import ObjectId

from errors import ConflictOnCreateError, InvalidOperationError, NotFoundError
from votes import Tally, user_vote


class TestGetOrCreate:
    def test_tally_creates_missing_vote(self, votes, store, resource):
        """Tally of an unvoted resource is 0/0 and materializes the record."""
        assert store.find_one("vote", {"resource": resource["id"]}) is None

        tally = votes.tally(resource["id"])

        assert tally == Tally(upvotes=0, downvotes=0)
        assert tally.to_dict() == {"upvotes": 0, "downvotes": 0}
        assert store.find_one("vote", {"resource": resource["id"]}) is not None

    def test_returns_existing_record(self, votes, resource):
        first = votes.get_or_create_vote(resource["id"])
        second = votes.get_or_create_vote(resource["id"])

        assert first["id"] == second["id"]

    def test_concurrent_first_access_creates_one_record(self, votes, store, resource):
        """N simultaneous first accesses leave exactly one Vote record."""
        with ThreadPoolExecutor(max_workers=16) as pool:
            records = list(pool.map(lambda _: votes.get_or_create_vote(resource["id"]), range(50)))

        assert len(store.find("vote", {"resource": resource["id"]})) == 1
        assert len({r["id"] for r in records}) == 1

    def test_create_conflict_rereads_winner(self, votes, store, resource):
        """A lost insert race returns the record written by the winner."""
        winner = store.create("vote", {"resource": resource["id"], "upvoters": ["u1"], "downvoters": []})
        original_find_one = store.find_one
        calls = []

        def stale_first_read(collection, filter_dict):
            calls.append(filter_dict)
            if len(calls) == 1:
                return None
            return original_find_one(collection, filter_dict)

        store.find_one = stale_first_read

        vote = votes.get_or_create_vote(resource["id"])

        assert vote["id"] == winner["id"]
        assert len(calls) == 2

    def test_unique_index_rejects_second_record(self, store):
        store.create("vote", {"resource": "r1", "upvoters": [], "downvoters": []})

        with pytest.raises(ConflictOnCreateError):
            store.create("vote", {"resource": "r1", "upvoters": [], "downvoters": []})

    def test_tally_missing_resource(self, votes, store):
        with pytest.raises(NotFoundError):
            votes.tally(str(ObjectId()))

        assert store.find("vote") == []


class TestCastVote:
    def test_upvote(self, votes, alice, resource):
        vote = votes.cast_vote(resource["id"], alice["id"], "up")

        assert vote["upvoters"] == [alice["id"]]
        assert Tally.of(vote) == Tally(1, 0)

    def test_recast_same_direction_is_noop(self, votes, alice, resource):
        votes.cast_vote(resource["id"], alice["id"], "up")
        vote = votes.cast_vote(resource["id"], alice["id"], "up")

        assert vote["upvoters"] == [alice["id"]]
        assert vote["downvoters"] == []

    def test_switching_direction_moves_voter(self, votes, alice, resource):
        """A downvote after an upvote retracts the upvote."""
        votes.cast_vote(resource["id"], alice["id"], "up")
        vote = votes.cast_vote(resource["id"], alice["id"], "down")

        assert vote["upvoters"] == []
        assert vote["downvoters"] == [alice["id"]]
        assert user_vote(vote, alice["id"]) == "down"

    def test_votes_from_several_users(self, votes, alice, bob, resource):
        votes.cast_vote(resource["id"], alice["id"], "up")
        votes.cast_vote(resource["id"], bob["id"], "down")

        tally = votes.tally(resource["id"])

        assert tally.to_dict() == {"upvotes": 1, "downvotes": 1}
        assert tally.score == 0

    def test_concurrent_flip_flop_keeps_exclusion(self, votes, store, alice, resource):
        """Racing up/down votes from one user never leave them in both sets."""
        directions = ["up", "down"] * 20

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda d: votes.cast_vote(resource["id"], alice["id"], d), directions))

        vote = store.find_one("vote", {"resource": resource["id"]})
        total = vote["upvoters"].count(alice["id"]) + vote["downvoters"].count(alice["id"])
        assert total == 1

    def test_invalid_direction(self, votes, alice, resource):
        with pytest.raises(InvalidOperationError):
            votes.cast_vote(resource["id"], alice["id"], "sideways")

    def test_vote_on_missing_resource(self, votes, alice):
        with pytest.raises(NotFoundError) as exc_info:
            votes.cast_vote(str(ObjectId()), alice["id"], "up")

        assert exc_info.value.entity == "resource"

    def test_retract_vote(self, votes, alice, resource):
        votes.cast_vote(resource["id"], alice["id"], "down")

        vote = votes.retract_vote(resource["id"], alice["id"])

        assert Tally.of(vote) == Tally(0, 0)
        assert user_vote(vote, alice["id"]) is None

    def test_retract_without_vote_is_noop(self, votes, alice, resource):
        vote = votes.retract_vote(resource["id"], alice["id"])

        assert Tally.of(vote) == Tally(0, 0)


class TestAnnotate:
    def test_annotate_adds_counts(self, votes, alice, resource):
        votes.cast_vote(resource["id"], alice["id"], "up")

        annotated = votes.annotate([resource])

        assert annotated[0]["id"] == resource["id"]
        assert annotated[0]["upvotes"] == 1
        assert annotated[0]["downvotes"] == 0
        assert "upvotes" not in resource
