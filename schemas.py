"""
Database Schemas for Topic Hub

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.
Relationships are stored as id strings, never embedded documents.
"""
from pydantic import BaseModel, Field, HttpUrl, EmailStr
from typing import List, Optional, Literal

# Core domain models

AllowedResourceType = Literal["article", "video", "course", "book", "documentation", "tool", "other"]
AllowedSkillLevel = Literal["beginner", "intermediate", "advanced"]

class User(BaseModel):
    """
    Registered users
    Collection name: "user"
    Invariant: A in followers(B) <=> B in followedUsers(A)
    """
    username: str = Field(..., min_length=1, description="Unique handle")
    email: EmailStr = Field(..., description="Unique email address")
    followedUsers: List[str] = Field(default_factory=list, description="Ids of users this user follows")
    followers: List[str] = Field(default_factory=list, description="Ids of users following this user")
    bookmarkedResources: List[str] = Field(default_factory=list, description="Bookmarked resource ids")
    resources: List[str] = Field(default_factory=list, description="Ids of resources this user submitted")

class Topic(BaseModel):
    """
    Topics that group resources
    Collection name: "topic"
    """
    name: str = Field(..., min_length=1, description="Globally unique topic name")
    slug: str = Field(..., description="URL slug derived from the name")
    description: str = Field("", description="Short description")
    resources: List[str] = Field(default_factory=list, description="Owned resource ids, no duplicates")

class Resource(BaseModel):
    """
    Learning resources attached to a topic
    Collection name: "resource"
    """
    topic: str = Field(..., description="Owning topic id")
    type: AllowedResourceType = Field(..., description="Resource kind")
    url: HttpUrl = Field(..., description="Where the resource lives")
    classification: Optional[str] = Field(None, description="Free-form classification, e.g. 'free'")
    comprehensiveness: Optional[int] = Field(None, ge=1, le=5, description="1 (overview) to 5 (exhaustive)")
    skillLevel: Optional[AllowedSkillLevel] = Field(None, description="Intended audience")
    creator: Optional[str] = Field(None, description="Id of the submitting user")

class Vote(BaseModel):
    """
    Vote sets for a resource, at most one record per resource
    Collection name: "vote"
    """
    resource: str = Field(..., description="Target resource id (unique)")
    upvoters: List[str] = Field(default_factory=list, description="User ids that upvoted")
    downvoters: List[str] = Field(default_factory=list, description="User ids that downvoted")
