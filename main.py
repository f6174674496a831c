import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import services
from config import Config
from database import create_document, get_db, utcnow
from errors import APIError, ConflictError, DomainRuleError, NotFoundError, ValidationFailedError
from payloads import (
    AddModeratorAction,
    CommentCreate,
    CommentPatch,
    CommentReplace,
    CommunityCreate,
    CommunityPatch,
    FriendPair,
    LikeAction,
    MarkReadAction,
    MembershipRequest,
    NotificationDelete,
    NotificationPatch,
    PostCreate,
    PostPatch,
    PostReplace,
    ReactionRemoval,
    ReactionRequest,
    RemoveModeratorAction,
    TouchLoginAction,
    TransferAdminAction,
    UnlikeAction,
    UserCreate,
    UserPatch,
    UserReplace,
)
from schemas import Comment, Community, CommunityCategory, CommunityPrivacy, Post, PostStatus, User, UserRole, UserStatus
from utils import (
    POST_SUMMARY,
    USER_CARD,
    USER_PROFILE,
    USER_SUMMARY,
    Pagination,
    error_body,
    find_page,
    hash_password,
    optional_object_id,
    paginated_response,
    pagination_params,
    parse_object_id,
    parse_sort,
    populate,
    populate_one,
    search_clause,
    success_response,
    with_reaction_summary,
)

logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

USER_SORT_FIELDS = ("createdAt", "updatedAt", "name", "email")
POST_SORT_FIELDS = ("createdAt", "updatedAt", "title", "views")
COMMUNITY_SORT_FIELDS = ("createdAt", "updatedAt", "name", "memberCount", "postCount")
HIDE_PASSWORD = {"passwordHash": 0}


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes()
        except PyMongoError as e:
            logger.warning("Could not ensure indexes at startup: %s", e)
    yield


app = FastAPI(title="Social API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------- Error handling -----------------


def _validation_message(errors) -> str:
    parts = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        field = ".".join(loc)
        parts.append(f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid value"))
    return "; ".join(parts) or "Validation failed"


@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=error_body(_validation_message(exc.errors())))


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content=error_body(_validation_message(exc.errors())))


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.info("Duplicate key on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=409, content=error_body("A record with this value already exists"))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=error_body(str(exc.detail)))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("Internal server error"))


@app.get("/")
def read_root():
    return {"message": "Social API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": "Set" if Config.DATABASE_URL else "Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    response["database_name"] = getattr(database.db, "name", None)
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = "Connected but Error"
    return response


# ----------------- Users -----------------


def _find_user(user_id: ObjectId) -> dict:
    user = get_db()["user"].find_one({"_id": user_id}, HIDE_PASSWORD)
    if not user:
        raise NotFoundError("User not found")
    return user


def _ensure_email_free(email: str, exclude_id: Optional[ObjectId] = None):
    query = {"email": email}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if get_db()["user"].find_one(query, {"_id": 1}):
        raise ConflictError("Email already in use by another user" if exclude_id else "User with this email already exists")


def _update_user(user_id: ObjectId, changes: dict) -> dict:
    changes["updatedAt"] = utcnow()
    user = get_db()["user"].find_one_and_update(
        {"_id": user_id},
        {"$set": changes},
        projection=HIDE_PASSWORD,
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFoundError("User not found")
    return user


@app.get("/api/users")
def list_users(
    pagination: Pagination = Depends(pagination_params()),
    search: Optional[str] = None,
    role: Optional[UserRole] = None,
    status: Optional[UserStatus] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
):
    query = search_clause(search, ("name", "email"))
    if role:
        query["role"] = role
    if status:
        query["status"] = status
    sort = parse_sort(USER_SORT_FIELDS, sort_by, sort_order)
    users, total = find_page("user", query, pagination, sort, HIDE_PASSWORD)
    return paginated_response(users, total, pagination)


@app.post("/api/users", status_code=201)
def create_user(payload: UserCreate):
    _ensure_email_free(payload.email)
    user = User(
        **payload.model_dump(exclude={"password"}),
        password_hash=hash_password(payload.password) if payload.password else None,
    )
    user_id = create_document("user", user)
    logger.info("Created user %s", user_id)
    return success_response(_find_user(ObjectId(user_id)))


@app.get("/api/users/{user_id}")
def get_user(user_id: str):
    return success_response(_find_user(parse_object_id(user_id, "user")))


@app.put("/api/users/{user_id}")
def replace_user(user_id: str, payload: UserReplace):
    oid = parse_object_id(user_id, "user")
    _find_user(oid)
    _ensure_email_free(payload.email, exclude_id=oid)
    changes = payload.model_dump(by_alias=True, exclude={"password"})
    if payload.password:
        changes["passwordHash"] = hash_password(payload.password)
    return success_response(_update_user(oid, changes))


@app.patch("/api/users/{user_id}")
def patch_user(user_id: str, body: UserPatch):
    oid = parse_object_id(user_id, "user")
    action = body.root
    if isinstance(action, TouchLoginAction):
        return success_response(_update_user(oid, {"lastLogin": utcnow()}))

    changes = action.fields.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    password = changes.pop("password", None)
    if password:
        changes["passwordHash"] = hash_password(password)
    if not changes:
        raise ValidationFailedError("No fields to update")
    if "email" in changes:
        _find_user(oid)
        _ensure_email_free(changes["email"], exclude_id=oid)
    return success_response(_update_user(oid, changes))


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str):
    services.delete_user(parse_object_id(user_id, "user"))
    return success_response({}, message="User deleted successfully")


# ----------------- Posts -----------------


def _present_post(post: Optional[dict], author_fields=USER_SUMMARY) -> dict:
    if not post:
        raise NotFoundError("Post not found")
    populate_one(post, "author", "user", author_fields)
    return with_reaction_summary(post)


def _update_post(post_id: ObjectId, changes: dict) -> dict:
    changes["updatedAt"] = utcnow()
    post = get_db()["post"].find_one_and_update(
        {"_id": post_id}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return _present_post(post)


@app.get("/api/posts")
def list_posts(
    pagination: Pagination = Depends(pagination_params()),
    search: Optional[str] = None,
    author: Optional[str] = None,
    status: Optional[PostStatus] = None,
    category: Optional[str] = None,
    tag: Optional[str] = None,
    community: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
):
    query = search_clause(search, ("title", "content"))
    author_id = optional_object_id(author, "author")
    if author_id:
        query["author"] = author_id
    community_id = optional_object_id(community, "community")
    if community_id:
        query["community"] = community_id
    if status:
        query["status"] = status
    if category:
        query["category"] = category
    if tag:
        query["tags"] = tag
    sort = parse_sort(POST_SORT_FIELDS, sort_by, sort_order)
    posts, total = find_page("post", query, pagination, sort)
    populate(posts, "author", "user", USER_SUMMARY)
    for post in posts:
        with_reaction_summary(post)
    return paginated_response(posts, total, pagination)


@app.post("/api/posts", status_code=201)
def create_post(payload: PostCreate):
    services.require_user(payload.author, "Author")
    if payload.community is not None:
        community = services.require("community", payload.community, "Community")
        if payload.author not in community.get("members", []):
            raise DomainRuleError("Author must be a member of the community")
    post_id = services.create_post(Post(**payload.model_dump()))
    return success_response(_present_post(get_db()["post"].find_one({"_id": post_id})))


@app.get("/api/posts/{post_id}")
def get_post(post_id: str):
    post = get_db()["post"].find_one_and_update(
        {"_id": parse_object_id(post_id, "post")},
        {"$inc": {"views": 1}},
        return_document=ReturnDocument.AFTER,
    )
    return success_response(_present_post(post, author_fields=USER_PROFILE))


@app.put("/api/posts/{post_id}")
def replace_post(post_id: str, payload: PostReplace):
    return success_response(_update_post(parse_object_id(post_id, "post"), payload.model_dump(by_alias=True)))


@app.patch("/api/posts/{post_id}")
def patch_post(post_id: str, body: PostPatch):
    oid = parse_object_id(post_id, "post")
    action = body.root
    if isinstance(action, LikeAction):
        services.require_user(action.user_id)
        post, _ = services.set_reaction("post", oid, action.user_id, "like")
        return success_response(_present_post(post))
    if isinstance(action, UnlikeAction):
        post, _ = services.remove_reaction("post", oid, action.user_id)
        return success_response(_present_post(post))

    changes = action.fields.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailedError("No fields to update")
    return success_response(_update_post(oid, changes))


@app.delete("/api/posts/{post_id}")
def delete_post(post_id: str):
    services.delete_post(parse_object_id(post_id, "post"))
    return success_response({}, message="Post deleted successfully")


# ----------------- Comments -----------------


def _present_comments(comments):
    populate(comments, "author", "user", USER_CARD)
    populate(comments, "post", "post", POST_SUMMARY)
    for comment in comments:
        with_reaction_summary(comment)
    return comments


def _present_comment(comment: Optional[dict]) -> dict:
    if not comment:
        raise NotFoundError("Comment not found")
    return _present_comments([comment])[0]


@app.get("/api/comments")
def list_comments(
    pagination: Pagination = Depends(pagination_params(20)),
    post_id: Optional[str] = Query(None, alias="postId"),
    parent_id: Optional[str] = Query(None, alias="parentId"),
    author: Optional[str] = None,
):
    query = {}
    post_oid = optional_object_id(post_id, "post")
    if post_oid:
        query["post"] = post_oid
    if parent_id == "null":
        query["parentComment"] = None
    elif parent_id:
        query["parentComment"] = parse_object_id(parent_id, "parent comment")
    author_oid = optional_object_id(author, "author")
    if author_oid:
        query["author"] = author_oid
    comments, total = find_page("comment", query, pagination, [("createdAt", DESCENDING), ("_id", DESCENDING)])
    return paginated_response(_present_comments(comments), total, pagination)


@app.post("/api/comments", status_code=201)
def create_comment(payload: CommentCreate):
    services.require_user(payload.author, "Author")
    post = services.require("post", payload.post, "Post")
    if payload.parent_comment is not None:
        parent = services.require("comment", payload.parent_comment, "Parent comment")
        if parent.get("post") != payload.post:
            raise ValidationFailedError("Parent comment belongs to a different post")
    comment_id = services.create_comment(Comment(**payload.model_dump()), post)
    return success_response(_present_comment(get_db()["comment"].find_one({"_id": comment_id})))


@app.get("/api/comments/{comment_id}")
def get_comment(comment_id: str):
    comment = get_db()["comment"].find_one({"_id": parse_object_id(comment_id, "comment")})
    return success_response(_present_comment(comment))


def _edit_comment(comment_id: ObjectId, content: str) -> dict:
    comment = get_db()["comment"].find_one_and_update(
        {"_id": comment_id},
        {"$set": {"content": content, "isEdited": True, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return _present_comment(comment)


@app.put("/api/comments/{comment_id}")
def replace_comment(comment_id: str, payload: CommentReplace):
    return success_response(_edit_comment(parse_object_id(comment_id, "comment"), payload.content))


@app.patch("/api/comments/{comment_id}")
def patch_comment(comment_id: str, body: CommentPatch):
    oid = parse_object_id(comment_id, "comment")
    action = body.root
    if isinstance(action, LikeAction):
        services.require_user(action.user_id)
        comment, _ = services.set_reaction("comment", oid, action.user_id, "like")
        return success_response(_present_comment(comment))
    if isinstance(action, UnlikeAction):
        comment, _ = services.remove_reaction("comment", oid, action.user_id)
        return success_response(_present_comment(comment))
    return success_response(_edit_comment(oid, action.content))


@app.delete("/api/comments/{comment_id}")
def delete_comment(comment_id: str):
    removed = services.delete_comment(parse_object_id(comment_id, "comment"))
    return success_response({"deleted": removed}, message="Comment deleted successfully")


# ----------------- Reactions -----------------


def _present_target(target: dict) -> dict:
    populate_one(target, "author", "user", USER_CARD)
    return with_reaction_summary(target)


@app.post("/api/reactions")
def add_reaction(payload: ReactionRequest):
    services.require_user(payload.user_id)
    target, changed = services.set_reaction(
        payload.target_type, payload.target_id, payload.user_id, payload.reaction_type
    )
    message = "Reaction added successfully" if changed else "Reaction unchanged"
    return success_response(_present_target(target), message=message)


@app.delete("/api/reactions")
def delete_reaction(payload: ReactionRemoval):
    target, changed = services.remove_reaction(payload.target_type, payload.target_id, payload.user_id)
    message = "Reaction removed successfully" if changed else "No reaction to remove"
    return success_response(_present_target(target), message=message)


# ----------------- Friends -----------------


@app.post("/api/friends/request")
def send_friend_request(payload: FriendPair):
    services.send_friend_request(payload.user_id, payload.friend_id)
    return success_response(message="Friend request sent successfully")


@app.get("/api/friends/request")
def list_friend_requests(
    user_id: str = Query(..., alias="userId"),
    type_: Literal["received", "sent"] = Query("received", alias="type"),
):
    user = _find_user(parse_object_id(user_id, "user"))
    field = "friendRequestsReceived" if type_ == "received" else "friendRequestsSent"
    populate_one(user, field, "user", USER_SUMMARY)
    requests = user.get(field, [])
    return success_response(requests, count=len(requests))


@app.post("/api/friends/accept")
def accept_friend_request(payload: FriendPair):
    services.accept_friend_request(payload.user_id, payload.friend_id)
    return success_response(message="Friend request accepted")


@app.post("/api/friends/reject")
def reject_friend_request(payload: FriendPair):
    services.reject_friend_request(payload.user_id, payload.friend_id)
    return success_response(message="Friend request rejected")


@app.post("/api/friends/cancel")
def cancel_friend_request(payload: FriendPair):
    services.cancel_friend_request(payload.user_id, payload.friend_id)
    return success_response(message="Friend request cancelled")


@app.get("/api/friends/list")
def list_friends(user_id: str = Query(..., alias="userId")):
    user = _find_user(parse_object_id(user_id, "user"))
    populate_one(user, "friends", "user", USER_PROFILE)
    friends = user.get("friends", [])
    return success_response(friends, count=len(friends))


@app.delete("/api/friends/list")
def remove_friend(payload: FriendPair):
    services.remove_friend(payload.user_id, payload.friend_id)
    return success_response(message="Friend removed successfully")


# ----------------- Notifications -----------------


@app.get("/api/notifications")
def list_notifications(
    user_id: str = Query(..., alias="userId"),
    unread_only: bool = Query(False, alias="unreadOnly"),
    pagination: Pagination = Depends(pagination_params(50)),
):
    recipient = parse_object_id(user_id, "user")
    query = {"recipient": recipient}
    if unread_only:
        query["read"] = False
    notifications, total = find_page(
        "notification", query, pagination, [("createdAt", DESCENDING), ("_id", DESCENDING)]
    )
    populate(notifications, "sender", "user", USER_CARD)
    populate(notifications, "relatedPost", "post", POST_SUMMARY)
    unread = get_db()["notification"].count_documents({"recipient": recipient, "read": False})
    return paginated_response(notifications, total, pagination, unreadCount=unread)


@app.patch("/api/notifications")
def patch_notifications(body: NotificationPatch):
    notifications = get_db()["notification"]
    action = body.root
    if isinstance(action, MarkReadAction):
        result = notifications.update_one({"_id": action.notification_id}, {"$set": {"read": True}})
        if result.matched_count == 0:
            raise NotFoundError("Notification not found")
        return success_response(message="Notification marked as read")

    result = notifications.update_many({"recipient": action.user_id, "read": False}, {"$set": {"read": True}})
    return success_response(message="All notifications marked as read", updated=result.modified_count)


@app.delete("/api/notifications")
def delete_notification(payload: NotificationDelete):
    result = get_db()["notification"].delete_one({"_id": payload.notification_id})
    if result.deleted_count == 0:
        raise NotFoundError("Notification not found")
    return success_response(message="Notification deleted")


# ----------------- Communities -----------------


def _present_community(community: Optional[dict], *fields: str) -> dict:
    if not community:
        raise NotFoundError("Community not found")
    community["memberCount"] = len(community.get("members", []))
    populate_one(community, "admin", "user", USER_SUMMARY)
    for field in fields:
        populate_one(community, field, "user", USER_SUMMARY)
    return community


def _ensure_name_free(name: str, exclude_id: Optional[ObjectId] = None):
    query = {"name": name}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if get_db()["community"].find_one(query, {"_id": 1}):
        raise ConflictError("Community name already exists")


def _update_community(query: dict, update: dict) -> Optional[dict]:
    update.setdefault("$set", {})["updatedAt"] = utcnow()
    return get_db()["community"].find_one_and_update(query, update, return_document=ReturnDocument.AFTER)


@app.get("/api/communities")
def list_communities(
    pagination: Pagination = Depends(pagination_params()),
    search: Optional[str] = None,
    category: Optional[CommunityCategory] = None,
    privacy: Optional[CommunityPrivacy] = None,
    member: Optional[str] = None,
    sort: str = "-createdAt",
):
    query = search_clause(search, ("name", "description"))
    if category:
        query["category"] = category
    if privacy:
        query["privacy"] = privacy
    member_id = optional_object_id(member, "member")
    if member_id:
        query["members"] = member_id
    communities, total = find_page("community", query, pagination, parse_sort(COMMUNITY_SORT_FIELDS, compact=sort))
    for community in communities:
        community["memberCount"] = len(community.get("members", []))
    populate(communities, "admin", "user", USER_SUMMARY)
    return paginated_response(communities, total, pagination)


@app.post("/api/communities", status_code=201)
def create_community(payload: CommunityCreate):
    services.require_user(payload.admin, "Admin user")
    _ensure_name_free(payload.name)
    community = Community(**payload.model_dump(), members=[payload.admin], member_count=1)
    community_id = create_document("community", community)
    logger.info("Created community %s (%s)", community_id, payload.name)
    created = get_db()["community"].find_one({"_id": ObjectId(community_id)})
    return success_response(_present_community(created))


@app.get("/api/communities/{community_id}")
def get_community(community_id: str):
    community = get_db()["community"].find_one({"_id": parse_object_id(community_id, "community")})
    return success_response(_present_community(community, "moderators", "members"))


@app.patch("/api/communities/{community_id}")
def patch_community(community_id: str, body: CommunityPatch):
    oid = parse_object_id(community_id, "community")
    action = body.root

    if isinstance(action, (AddModeratorAction, RemoveModeratorAction, TransferAdminAction)):
        community = services.require("community", oid, "Community")
        if action.user_id not in community.get("members", []):
            raise DomainRuleError("User must be a member of the community")
        if isinstance(action, AddModeratorAction):
            if action.user_id == community.get("admin"):
                raise DomainRuleError("The admin cannot also be a moderator")
            updated = _update_community({"_id": oid, "members": action.user_id},
                                        {"$addToSet": {"moderators": action.user_id}})
        elif isinstance(action, RemoveModeratorAction):
            updated = _update_community({"_id": oid}, {"$pull": {"moderators": action.user_id}})
        else:
            updated = _update_community(
                {"_id": oid, "members": action.user_id},
                {"$set": {"admin": action.user_id}, "$pull": {"moderators": action.user_id}},
            )
            logger.info("Community %s transferred to %s", oid, action.user_id)
        if updated is None:
            raise ConflictError("Membership changed while updating; try again")
        return success_response(_present_community(updated, "moderators"))

    changes = action.fields.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailedError("No fields to update")
    if "name" in changes:
        _ensure_name_free(changes["name"], exclude_id=oid)
    return success_response(_present_community(_update_community({"_id": oid}, {"$set": changes})))


@app.delete("/api/communities/{community_id}")
def delete_community(community_id: str):
    services.delete_community(parse_object_id(community_id, "community"))
    return success_response(message="Community deleted successfully")


@app.post("/api/communities/{community_id}/join")
def join_community(community_id: str, payload: MembershipRequest):
    community = services.join_community(parse_object_id(community_id, "community"), payload.user_id)
    return success_response(_present_community(community), message="Joined community successfully")


@app.post("/api/communities/{community_id}/leave")
def leave_community(community_id: str, payload: MembershipRequest):
    community = services.leave_community(parse_object_id(community_id, "community"), payload.user_id)
    return success_response(_present_community(community), message="Left community successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
