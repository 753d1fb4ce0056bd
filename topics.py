"""
Topic service: topic CRUD, resource submission and the annotated topic read.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from coordinator import Applied, ConsistencyCoordinator, Step
from errors import ConflictError, ConflictOnCreateError, InvalidOperationError, NotFoundError
from relationships import RelationshipEngine
from schemas import Resource, Topic
from store import Document, EntityStore
from votes import VoteEngine

logger = logging.getLogger(__name__)

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _NON_SLUG.sub("-", name.lower()).strip("-")


def default_description(name: str) -> str:
    return f"A curated collection of resources for learning {name}."


class TopicService:
    def __init__(self, store: EntityStore, relationships: RelationshipEngine, votes: VoteEngine,
                 coordinator: ConsistencyCoordinator) -> None:
        self.store = store
        self.relationships = relationships
        self.votes = votes
        self.coordinator = coordinator

    def _by_slug(self, slug: str) -> Document:
        topic = self.store.find_one("topic", {"slug": slug})
        if topic is None:
            raise NotFoundError("topic", slug)
        return topic

    def create_topic(self, name: str, description: Optional[str] = None) -> Document:
        name = name.strip()
        slug = slugify(name)
        if not slug:
            raise InvalidOperationError("Topic name must contain letters or digits", details={"name": name})
        if self.store.find_one("topic", {"name": name}) is not None:
            raise ConflictError("Topic already exists", "topic", {"name": name})
        try:
            topic = self.store.create("topic", Topic(
                name=name, slug=slug, description=description or default_description(name),
            ).model_dump())
        except ConflictOnCreateError as e:
            raise ConflictError("Topic already exists", "topic", e.key) from e
        logger.info("Created topic %s (%s)", name, slug)
        return topic

    def list_topics(self) -> List[Document]:
        topics = self.store.find("topic")
        for topic in topics:
            topic["resources"] = self.store.find_many("resource", topic.get("resources", []))
        return topics

    def get_topic_by_slug(self, slug: str) -> Document:
        """Topic with each resource annotated with its vote tally.

        Resources without a Vote record get one created here.
        """
        topic = self._by_slug(slug)
        resources = self.store.find_many("resource", topic.get("resources", []))
        topic["resources"] = self.votes.annotate(resources)
        return topic

    def update_topic(self, slug: str, description: str) -> Document:
        topic = self._by_slug(slug)
        updated = self.store.save("topic", {"id": topic["id"], "description": description})
        if updated is None:
            raise NotFoundError("topic", slug)
        return updated

    def _resource_for(self, topic: Document, fields: Dict[str, Any], creator_id: str) -> Tuple[Document, bool]:
        """Existing Resource for this topic and URL, or a new one. The flag is True if created."""
        doc = Resource(**{**fields, "topic": topic["id"], "creator": creator_id}).model_dump(mode="json")
        key = {"topic": topic["id"], "url": doc["url"]}
        existing = self.store.find_one("resource", key)
        if existing is not None:
            return existing, False
        try:
            return self.store.create("resource", doc), True
        except ConflictOnCreateError:
            existing = self.store.find_one("resource", key)
            if existing is None:
                raise
            return existing, False

    def add_resource(self, slug: str, fields: Dict[str, Any], creator_id: str) -> Document:
        """Submit a resource to a topic.

        A topic holds a given URL once, so re-submitting (or retrying after a
        partial failure) reuses the existing Resource and only completes the
        missing links on the Topic and on the creator. A Resource created by
        this call is deleted again if the call is rejected.
        """
        topic = self._by_slug(slug)
        if self.store.find_by_id("user", creator_id) is None:
            raise NotFoundError("user", creator_id)
        submitted: Dict[str, Document] = {}

        def submit() -> Applied:
            resource, created = self._resource_for(topic, fields, creator_id)
            submitted["resource"] = resource
            return Applied(resource, created)

        def link(collection: str, entity_id: str, add: bool = True) -> Applied:
            return self.relationships.change_membership(
                collection, entity_id, "resources", submitted["resource"]["id"], add)

        records = self.coordinator.execute("add_resource", [
            Step("resource", apply=submit,
                 undo=lambda: self.store.delete("resource", submitted["resource"]["id"])),
            Step("topic.resources", apply=lambda: link("topic", topic["id"]),
                 undo=lambda: link("topic", topic["id"], add=False)),
            Step("creator.resources", apply=lambda: link("user", submitted["resource"]["creator"]),
                 undo=lambda: link("user", submitted["resource"]["creator"], add=False)),
        ])
        resource = records["resource"]
        logger.info("Resource %s added to topic %s", resource["id"], slug)
        return resource

