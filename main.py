import logging
from functools import lru_cache
from typing import Optional, Literal
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, HttpUrl

from config import get_settings
from coordinator import ConsistencyCoordinator
from database import db, ensure_indexes
from errors import SocialGraphError
from relationships import RelationshipEngine
from schemas import AllowedResourceType, AllowedSkillLevel
from store import EntityStore, MemoryEntityStore, MongoEntityStore
from topics import TopicService
from users import UserService
from votes import Tally, VoteEngine, user_vote

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Topic Hub API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Wiring

@lru_cache(maxsize=1)
def get_store() -> EntityStore:
    if settings.store_backend == "memory":
        logger.warning("Using in-memory store, data is lost on restart")
        return MemoryEntityStore()
    if db is None:
        raise RuntimeError("STORE_BACKEND=mongo requires DATABASE_URL and DATABASE_NAME")
    ensure_indexes(db)
    return MongoEntityStore(db)

def get_coordinator() -> ConsistencyCoordinator:
    return ConsistencyCoordinator(settings.coordinator_max_attempts, settings.coordinator_backoff_seconds)

def get_relationships(store: EntityStore = Depends(get_store),
                      coordinator: ConsistencyCoordinator = Depends(get_coordinator)) -> RelationshipEngine:
    return RelationshipEngine(store, coordinator)

def get_votes(store: EntityStore = Depends(get_store)) -> VoteEngine:
    return VoteEngine(store)

def get_topics(store: EntityStore = Depends(get_store),
               relationships: RelationshipEngine = Depends(get_relationships),
               votes: VoteEngine = Depends(get_votes),
               coordinator: ConsistencyCoordinator = Depends(get_coordinator)) -> TopicService:
    return TopicService(store, relationships, votes, coordinator)

def get_users(store: EntityStore = Depends(get_store)) -> UserService:
    return UserService(store)

def get_actor(x_user_id: Optional[str] = Header(None)) -> str:
    # Identity is resolved by the auth middleware in front of this service
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id

@app.exception_handler(SocialGraphError)
async def handle_engine_error(request: Request, exc: SocialGraphError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.to_dict()})

# Pydantic models for requests

class UserCreate(BaseModel):
    username: str = Field(..., min_length=1)
    email: EmailStr

class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None

class FollowRequest(BaseModel):
    userIdToFollow: str = Field(..., min_length=1)

class UnfollowRequest(BaseModel):
    userIdToUnfollow: str = Field(..., min_length=1)

class BookmarkRequest(BaseModel):
    resourceId: str = Field(..., min_length=1)

class TopicCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None

class TopicUpdate(BaseModel):
    description: str

class ResourceCreate(BaseModel):
    type: AllowedResourceType
    url: HttpUrl
    classification: Optional[str] = None
    comprehensiveness: Optional[int] = Field(None, ge=1, le=5)
    skillLevel: Optional[AllowedSkillLevel] = None

class VoteRequest(BaseModel):
    direction: Literal["up", "down"]

# Routes

@app.get("/")
def root():
    return {"message": "Topic Hub API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "store": settings.store_backend,
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        status = get_store().status()
        response["database"] = "✅ Connected & Working"
        response["database_name"] = status["database_name"]
        response["collections"] = status["collections"]
        response["connection_status"] = "Connected"
    except SocialGraphError as e:
        response["database"] = f"⚠️  Connected but Error: {e.message[:50]}"
    except RuntimeError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response

# Users

@app.post("/api/users", status_code=201)
def register_user(payload: UserCreate, users: UserService = Depends(get_users)):
    return users.register_user(payload.username, payload.email)

@app.get("/api/users/me")
def get_profile(actor: str = Depends(get_actor), users: UserService = Depends(get_users)):
    return users.get_profile(actor)

@app.put("/api/users/me")
def update_profile(payload: ProfileUpdate, actor: str = Depends(get_actor),
                   users: UserService = Depends(get_users)):
    return users.update_profile(actor, payload.username, payload.email)

@app.post("/api/users/follow")
def follow_user(payload: FollowRequest, actor: str = Depends(get_actor),
                relationships: RelationshipEngine = Depends(get_relationships)):
    return relationships.follow_user(actor, payload.userIdToFollow).to_dict()

@app.post("/api/users/unfollow")
def unfollow_user(payload: UnfollowRequest, actor: str = Depends(get_actor),
                  relationships: RelationshipEngine = Depends(get_relationships)):
    return relationships.unfollow_user(actor, payload.userIdToUnfollow).to_dict()

@app.post("/api/users/bookmark")
def bookmark_resource(payload: BookmarkRequest, actor: str = Depends(get_actor),
                      relationships: RelationshipEngine = Depends(get_relationships)):
    return relationships.bookmark_resource(actor, payload.resourceId)

@app.post("/api/users/unbookmark")
def unbookmark_resource(payload: BookmarkRequest, actor: str = Depends(get_actor),
                        relationships: RelationshipEngine = Depends(get_relationships)):
    return relationships.unbookmark_resource(actor, payload.resourceId)

# Topics

@app.post("/api/topics", status_code=201)
def create_topic(payload: TopicCreate, topics: TopicService = Depends(get_topics)):
    return topics.create_topic(payload.name, payload.description)

@app.get("/api/topics")
def list_topics(topics: TopicService = Depends(get_topics)):
    return topics.list_topics()

@app.get("/api/topics/{slug}")
def get_topic(slug: str, topics: TopicService = Depends(get_topics)):
    return topics.get_topic_by_slug(slug)

@app.put("/api/topics/{slug}")
def update_topic(slug: str, payload: TopicUpdate, topics: TopicService = Depends(get_topics)):
    return topics.update_topic(slug, payload.description)

@app.post("/api/topics/{slug}/resources", status_code=201)
def add_resource(slug: str, payload: ResourceCreate, actor: str = Depends(get_actor),
                 topics: TopicService = Depends(get_topics)):
    return topics.add_resource(slug, payload.model_dump(), actor)

# Votes

def _vote_response(vote: dict, actor: Optional[str] = None) -> dict:
    data = {"resource": vote["resource"], **Tally.of(vote).to_dict()}
    if actor:
        data["myVote"] = user_vote(vote, actor)
    return data

@app.get("/api/resources/{resource_id}/votes")
def get_tally(resource_id: str, votes: VoteEngine = Depends(get_votes)):
    return {"resource": resource_id, **votes.tally(resource_id).to_dict()}

@app.post("/api/resources/{resource_id}/vote")
def cast_vote(resource_id: str, vote: VoteRequest, actor: str = Depends(get_actor),
              votes: VoteEngine = Depends(get_votes)):
    return _vote_response(votes.cast_vote(resource_id, actor, vote.direction), actor)

@app.delete("/api/resources/{resource_id}/vote")
def retract_vote(resource_id: str, actor: str = Depends(get_actor), votes: VoteEngine = Depends(get_votes)):
    return _vote_response(votes.retract_vote(resource_id, actor), actor)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
