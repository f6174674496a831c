"""
Request bodies accepted by the API.

Every partial update carries an explicit ``action`` tag; bodies with a missing
or unknown action fail validation instead of falling through to a merge.
Unknown keys (``_id``, counters, timestamps...) are ignored.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import Field, RootModel, StringConstraints

from schemas import (
    MAX_TAGS,
    PHONE_PATTERN,
    Address,
    CamelModel,
    CommunityCategory,
    CommunityPrivacy,
    Email,
    Media,
    PostStatus,
    PyObjectId,
    ReactionKind,
    RuleText,
    UserRole,
    UserStatus,
)

# ----------------- Users -----------------

# Passwords are hashed exactly as typed
Password = Annotated[str, StringConstraints(strip_whitespace=False, min_length=6, max_length=128)]


class UserCreate(CamelModel):
    name: str = Field(..., min_length=2, max_length=60)
    email: Email
    password: Optional[Password] = None
    age: Optional[int] = Field(None, ge=1, le=150)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    role: UserRole = "user"
    status: UserStatus = "active"
    avatar: Optional[str] = None
    cover_photo: Optional[str] = None
    bio: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=100)
    website: Optional[str] = None


class UserReplace(UserCreate):
    pass


class UserFields(CamelModel):
    name: Optional[str] = Field(None, min_length=2, max_length=60)
    email: Optional[Email] = None
    password: Optional[Password] = None
    age: Optional[int] = Field(None, ge=1, le=150)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[Address] = None
    role: Optional[UserRole] = None
    status: Optional[UserStatus] = None
    avatar: Optional[str] = None
    cover_photo: Optional[str] = None
    bio: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=100)
    website: Optional[str] = None


class UpdateUserAction(CamelModel):
    action: Literal["update"]
    fields: UserFields


class TouchLoginAction(CamelModel):
    action: Literal["touchLogin"]


class UserPatch(RootModel):
    root: Annotated[Union[UpdateUserAction, TouchLoginAction], Field(discriminator="action")]


# ----------------- Posts -----------------


class PostReplace(CamelModel):
    title: str = Field(..., min_length=3, max_length=200)
    content: str = Field(..., min_length=10)
    tags: List[str] = Field(default_factory=list, max_length=MAX_TAGS)
    category: str = Field(..., min_length=1)
    status: PostStatus = "draft"
    media: Media = Field(default_factory=Media)
    featured_image: Optional[str] = None


class PostCreate(PostReplace):
    author: PyObjectId
    community: Optional[PyObjectId] = None


class PostFields(CamelModel):
    title: Optional[str] = Field(None, min_length=3, max_length=200)
    content: Optional[str] = Field(None, min_length=10)
    tags: Optional[List[str]] = Field(None, max_length=MAX_TAGS)
    category: Optional[str] = Field(None, min_length=1)
    status: Optional[PostStatus] = None
    media: Optional[Media] = None
    featured_image: Optional[str] = None


class LikeAction(CamelModel):
    action: Literal["like"]
    user_id: PyObjectId


class UnlikeAction(CamelModel):
    action: Literal["unlike"]
    user_id: PyObjectId


class UpdatePostAction(CamelModel):
    action: Literal["update"]
    fields: PostFields


class PostPatch(RootModel):
    root: Annotated[Union[LikeAction, UnlikeAction, UpdatePostAction], Field(discriminator="action")]


# ----------------- Comments -----------------


class CommentReplace(CamelModel):
    content: str = Field(..., min_length=1, max_length=1000)


class CommentCreate(CommentReplace):
    author: PyObjectId
    post: PyObjectId
    parent_comment: Optional[PyObjectId] = None


class UpdateCommentAction(CamelModel):
    action: Literal["update"]
    content: str = Field(..., min_length=1, max_length=1000)


class CommentPatch(RootModel):
    root: Annotated[Union[LikeAction, UnlikeAction, UpdateCommentAction], Field(discriminator="action")]


# ----------------- Reactions -----------------


class ReactionRemoval(CamelModel):
    user_id: PyObjectId
    target_id: PyObjectId
    target_type: Literal["post", "comment"]


class ReactionRequest(ReactionRemoval):
    reaction_type: ReactionKind


# ----------------- Friends -----------------


class FriendPair(CamelModel):
    user_id: PyObjectId
    friend_id: PyObjectId


# ----------------- Notifications -----------------


class MarkReadAction(CamelModel):
    action: Literal["markRead"]
    notification_id: PyObjectId


class MarkAllReadAction(CamelModel):
    action: Literal["markAllRead"]
    user_id: PyObjectId


class NotificationPatch(RootModel):
    root: Annotated[Union[MarkReadAction, MarkAllReadAction], Field(discriminator="action")]


class NotificationDelete(CamelModel):
    notification_id: PyObjectId


# ----------------- Communities -----------------


class CommunityCreate(CamelModel):
    name: str = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    category: CommunityCategory = "other"
    privacy: CommunityPrivacy = "public"
    admin: PyObjectId
    cover_image: Optional[str] = None
    rules: List[RuleText] = Field(default_factory=list)


class CommunityFields(CamelModel):
    name: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    category: Optional[CommunityCategory] = None
    privacy: Optional[CommunityPrivacy] = None
    cover_image: Optional[str] = None
    rules: Optional[List[RuleText]] = None


class UpdateCommunityAction(CamelModel):
    action: Literal["update"]
    fields: CommunityFields


class AddModeratorAction(CamelModel):
    action: Literal["addModerator"]
    user_id: PyObjectId


class RemoveModeratorAction(CamelModel):
    action: Literal["removeModerator"]
    user_id: PyObjectId


class TransferAdminAction(CamelModel):
    action: Literal["transferAdmin"]
    user_id: PyObjectId


class CommunityPatch(RootModel):
    root: Annotated[
        Union[UpdateCommunityAction, AddModeratorAction, RemoveModeratorAction, TransferAdminAction],
        Field(discriminator="action"),
    ]


class MembershipRequest(CamelModel):
    user_id: PyObjectId
