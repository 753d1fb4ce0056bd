"""
Shared fixtures: an in-memory store and the engines wired on top of it.
"""

import pytest
from fastapi.testclient import TestClient

from coordinator import ConsistencyCoordinator
from relationships import RelationshipEngine
from store import MemoryEntityStore
from topics import TopicService
from users import UserService
from votes import VoteEngine


@pytest.fixture
def store():
    return MemoryEntityStore()


@pytest.fixture
def coordinator():
    """Coordinator that retries without sleeping."""
    return ConsistencyCoordinator(max_attempts=3, backoff_seconds=0, sleep=lambda _: None)


@pytest.fixture
def relationships(store, coordinator):
    return RelationshipEngine(store, coordinator)


@pytest.fixture
def votes(store):
    return VoteEngine(store)


@pytest.fixture
def users(store):
    return UserService(store)


@pytest.fixture
def topics(store, relationships, votes, coordinator):
    return TopicService(store, relationships, votes, coordinator)


@pytest.fixture
def alice(users):
    return users.register_user("alice", "alice@example.com")


@pytest.fixture
def bob(users):
    return users.register_user("bob", "bob@example.com")


@pytest.fixture
def topic(topics):
    return topics.create_topic("Python")


@pytest.fixture
def resource(topics, topic, alice):
    return topics.add_resource(
        topic["slug"],
        {"type": "article", "url": "https://docs.python.org/3/tutorial/"},
        alice["id"],
    )


@pytest.fixture
def client(store, coordinator):
    from main import app, get_coordinator, get_store

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
