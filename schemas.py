"""
Database Schemas for the Social API

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name. Example: class User -> "user" collection.

Fields are snake_case in Python and stored/serialized in camelCase
(``friend_requests_sent`` -> ``friendRequestsSent``).
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer, PlainValidator, WithJsonSchema
from pydantic.alias_generators import to_camel

ReactionKind = Literal["like", "love", "haha", "wow", "sad", "angry"]
REACTION_KINDS = ("like", "love", "haha", "wow", "sad", "angry")

UserRole = Literal["user", "admin", "moderator"]
UserStatus = Literal["active", "inactive", "suspended"]
PostStatus = Literal["draft", "published", "archived"]
MediaType = Literal["image", "video", "none"]
CommunityCategory = Literal[
    "technology", "sports", "gaming", "music", "art", "education", "business", "lifestyle", "other"
]
CommunityPrivacy = Literal["public", "private"]
NotificationType = Literal["friend_request", "friend_accept", "like", "comment", "reaction", "mention", "share"]

OBJECT_ID_PATTERN = r"^[0-9a-fA-F]{24}$"
EMAIL_PATTERN = r"^\S+@\S+\.\S+$"
PHONE_PATTERN = r"^[0-9+\-\s()]+$"
MAX_TAGS = 10


def _to_object_id(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value):
        return ObjectId(value)
    raise ValueError("must be a 24-character hex ObjectId")


# Accepts hex strings or ObjectId, keeps ObjectId in python dumps, strings in JSON
PyObjectId = Annotated[
    ObjectId,
    PlainValidator(_to_object_id),
    PlainSerializer(str, return_type=str, when_used="json"),
    WithJsonSchema({"type": "string", "pattern": OBJECT_ID_PATTERN}),
]

Email = Annotated[str, Field(pattern=EMAIL_PATTERN, max_length=254), AfterValidator(str.lower)]
RuleText = Annotated[str, Field(min_length=1, max_length=200)]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        str_strip_whitespace=True,
    )


class Address(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None


class Media(CamelModel):
    type: MediaType = Field("none", description="Attached media kind")
    url: Optional[str] = None
    thumbnail: Optional[str] = None


# Core user; the password is only ever stored as a salted hash
class User(CamelModel):
    name: str = Field(..., min_length=2, max_length=60, description="Display name")
    email: Email = Field(..., description="Unique, lowercased email")
    password_hash: Optional[str] = Field(None, description="pbkdf2 hash, never returned")
    age: Optional[int] = Field(None, ge=1, le=150)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    role: UserRole = Field("user", description="Role for permissions")
    status: UserStatus = Field("active", description="Account state")
    avatar: Optional[str] = Field(None, description="Profile image URL")
    cover_photo: Optional[str] = None
    bio: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=100)
    website: Optional[str] = None
    friends: List[PyObjectId] = Field(default_factory=list)
    friend_requests_sent: List[PyObjectId] = Field(default_factory=list)
    friend_requests_received: List[PyObjectId] = Field(default_factory=list)
    posts_count: int = Field(0, ge=0)
    last_login: Optional[datetime] = None


class Post(CamelModel):
    title: str = Field(..., min_length=3, max_length=200)
    content: str = Field(..., min_length=10)
    author: PyObjectId = Field(..., description="User ID of author")
    community: Optional[PyObjectId] = Field(None, description="Community the post was shared to")
    tags: List[str] = Field(default_factory=list, max_length=MAX_TAGS)
    category: str = Field(..., min_length=1)
    status: PostStatus = "draft"
    views: int = Field(0, ge=0)
    reactions: Dict[str, ReactionKind] = Field(default_factory=dict, description="User ID -> reaction kind")
    media: Media = Field(default_factory=Media)
    featured_image: Optional[str] = None
    comments_count: int = Field(0, ge=0)
    shares_count: int = Field(0, ge=0)


class Comment(CamelModel):
    content: str = Field(..., min_length=1, max_length=1000)
    author: PyObjectId = Field(..., description="User ID of commenter")
    post: PyObjectId = Field(..., description="Post being commented on")
    parent_comment: Optional[PyObjectId] = Field(None, description="Comment this one replies to")
    reactions: Dict[str, ReactionKind] = Field(default_factory=dict)
    is_edited: bool = False


class Community(CamelModel):
    name: str = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    cover_image: Optional[str] = None
    category: CommunityCategory = "other"
    privacy: CommunityPrivacy = "public"
    admin: PyObjectId = Field(..., description="Owning user; always a member")
    moderators: List[PyObjectId] = Field(default_factory=list)
    members: List[PyObjectId] = Field(default_factory=list)
    rules: List[RuleText] = Field(default_factory=list)
    member_count: int = Field(0, ge=0)
    post_count: int = Field(0, ge=0)


class Notification(CamelModel):
    recipient: PyObjectId
    sender: PyObjectId
    type: NotificationType
    related_post: Optional[PyObjectId] = None
    related_comment: Optional[PyObjectId] = None
    message: str = Field(..., min_length=1, max_length=500)
    read: bool = False
