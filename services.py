"""
Operations that touch more than one document.

Each one is expressed either as a single guarded atomic update or as a short
sequence of idempotent updates run through ``run_in_transaction``.
"""

import logging
from typing import List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

from database import create_document, get_db, run_in_transaction, utcnow
from errors import ConflictError, DomainRuleError, NotFoundError
from schemas import Comment, Notification, Post

logger = logging.getLogger(__name__)

TARGET_LABELS = {"post": "Post", "comment": "Comment"}


def require(collection_name: str, doc_id: ObjectId, label: str) -> dict:
    doc = get_db()[collection_name].find_one({"_id": doc_id})
    if not doc:
        raise NotFoundError(f"{label} not found")
    return doc


def require_user(user_id: ObjectId, label: str = "User") -> dict:
    return require("user", user_id, label)


def notify(recipient: ObjectId, sender: ObjectId, type_: str, message: str,
           related_post: Optional[ObjectId] = None, related_comment: Optional[ObjectId] = None,
           session=None) -> Optional[str]:
    if recipient is None or recipient == sender:
        return None
    notification = Notification(
        recipient=recipient,
        sender=sender,
        type=type_,
        message=message,
        related_post=related_post,
        related_comment=related_comment,
    )
    return create_document("notification", notification, session=session)


# ----------------- Creation with counters -----------------

def create_post(post: Post) -> ObjectId:
    def apply(session):
        post_id = ObjectId(create_document("post", post, session=session))
        db = get_db()
        db["user"].update_one({"_id": post.author}, {"$inc": {"postsCount": 1}}, session=session)
        if post.community is not None:
            db["community"].update_one({"_id": post.community}, {"$inc": {"postCount": 1}}, session=session)
        return post_id

    return run_in_transaction(apply)


def create_comment(comment: Comment, post: dict) -> ObjectId:
    def apply(session):
        comment_id = ObjectId(create_document("comment", comment, session=session))
        get_db()["post"].update_one({"_id": comment.post}, {"$inc": {"commentsCount": 1}}, session=session)
        notify(post.get("author"), comment.author, "comment", "commented on your post",
               related_post=comment.post, related_comment=comment_id, session=session)
        return comment_id

    return run_in_transaction(apply)


# ----------------- Reactions -----------------

def set_reaction(target_type: str, target_id: ObjectId, user_id: ObjectId, kind: str) -> Tuple[dict, bool]:
    """Record ``kind`` as the user's single reaction on a post or comment.

    Returns the target and whether anything changed. Choosing the kind the
    user already has is a no-op and sends no notification.
    """
    collection = get_db()[target_type]
    key = f"reactions.{user_id}"
    updated = collection.find_one_and_update(
        {"_id": target_id, key: {"$ne": kind}},
        {"$set": {key: kind}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        return require(target_type, target_id, TARGET_LABELS[target_type]), False

    related = {"related_post": target_id} if target_type == "post" else {"related_comment": target_id}
    notify(updated.get("author"), user_id, "reaction", f"reacted {kind} to your {target_type}", **related)
    return updated, True


def remove_reaction(target_type: str, target_id: ObjectId, user_id: ObjectId) -> Tuple[dict, bool]:
    collection = get_db()[target_type]
    key = f"reactions.{user_id}"
    updated = collection.find_one_and_update(
        {"_id": target_id, key: {"$exists": True}},
        {"$unset": {key: ""}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        return require(target_type, target_id, TARGET_LABELS[target_type]), False
    return updated, True


# ----------------- Friends -----------------

def send_friend_request(user_id: ObjectId, friend_id: ObjectId):
    if user_id == friend_id:
        raise DomainRuleError("Cannot send friend request to yourself")
    user = require_user(user_id)
    require_user(friend_id, "Friend")
    if friend_id in user.get("friends", []):
        raise ConflictError("Already friends")
    if friend_id in user.get("friendRequestsSent", []):
        raise ConflictError("Friend request already sent")
    if friend_id in user.get("friendRequestsReceived", []):
        raise ConflictError("This user has already sent you a friend request")

    users = get_db()["user"]

    def apply(session):
        result = users.update_one(
            {
                "_id": user_id,
                "friends": {"$ne": friend_id},
                "friendRequestsSent": {"$ne": friend_id},
                "friendRequestsReceived": {"$ne": friend_id},
            },
            {"$addToSet": {"friendRequestsSent": friend_id}},
            session=session,
        )
        if result.modified_count == 0:
            raise ConflictError("Friend request already pending")
        # a crossing request from friend_id may have reached their document first
        result = users.update_one(
            {"_id": friend_id, "friends": {"$ne": user_id}, "friendRequestsSent": {"$ne": user_id}},
            {"$addToSet": {"friendRequestsReceived": user_id}},
            session=session,
        )
        if result.matched_count == 0:
            users.update_one({"_id": user_id}, {"$pull": {"friendRequestsSent": friend_id}}, session=session)
            raise ConflictError("This user has already sent you a friend request")
        notify(friend_id, user_id, "friend_request", "sent you a friend request", session=session)

    run_in_transaction(apply)
    logger.info("Friend request %s -> %s", user_id, friend_id)


def accept_friend_request(user_id: ObjectId, friend_id: ObjectId):
    """``user_id`` accepts the request previously sent by ``friend_id``.

    A request whose first half was already applied (receiver updated, sender
    not) is completed rather than rejected, so retrying is safe.
    """
    user = require_user(user_id)
    friend = require_user(friend_id, "Friend")
    pending = friend_id in user.get("friendRequestsReceived", [])
    half_applied = friend_id in user.get("friends", []) and user_id in friend.get("friendRequestsSent", [])
    if not (pending or half_applied):
        raise NotFoundError("No pending friend request from this user")

    users = get_db()["user"]

    def apply(session):
        first = users.update_one(
            {"_id": user_id},
            {
                "$pull": {"friendRequestsReceived": friend_id, "friendRequestsSent": friend_id},
                "$addToSet": {"friends": friend_id},
            },
            session=session,
        )
        users.update_one(
            {"_id": friend_id},
            {
                "$pull": {"friendRequestsSent": user_id, "friendRequestsReceived": user_id},
                "$addToSet": {"friends": user_id},
            },
            session=session,
        )
        if first.modified_count:
            notify(friend_id, user_id, "friend_accept", "accepted your friend request", session=session)

    run_in_transaction(apply)
    logger.info("Friend request %s -> %s accepted", friend_id, user_id)


def _drop_pending(sender_id: ObjectId, receiver_id: ObjectId):
    sender = require_user(sender_id)
    receiver = require_user(receiver_id)
    if receiver_id not in sender.get("friendRequestsSent", []) and sender_id not in receiver.get("friendRequestsReceived", []):
        raise NotFoundError("No pending friend request between these users")

    users = get_db()["user"]

    def apply(session):
        users.update_one({"_id": sender_id}, {"$pull": {"friendRequestsSent": receiver_id}}, session=session)
        users.update_one({"_id": receiver_id}, {"$pull": {"friendRequestsReceived": sender_id}}, session=session)

    run_in_transaction(apply)


def reject_friend_request(user_id: ObjectId, friend_id: ObjectId):
    _drop_pending(sender_id=friend_id, receiver_id=user_id)
    logger.info("Friend request %s -> %s rejected", friend_id, user_id)


def cancel_friend_request(user_id: ObjectId, friend_id: ObjectId):
    _drop_pending(sender_id=user_id, receiver_id=friend_id)
    logger.info("Friend request %s -> %s cancelled", user_id, friend_id)


def remove_friend(user_id: ObjectId, friend_id: ObjectId):
    user = require_user(user_id)
    friend = require_user(friend_id, "Friend")
    if friend_id not in user.get("friends", []) and user_id not in friend.get("friends", []):
        raise NotFoundError("Users are not friends")

    users = get_db()["user"]

    def apply(session):
        users.update_one({"_id": user_id}, {"$pull": {"friends": friend_id}}, session=session)
        users.update_one({"_id": friend_id}, {"$pull": {"friends": user_id}}, session=session)

    run_in_transaction(apply)
    logger.info("Friendship %s <-> %s removed", user_id, friend_id)


# ----------------- Communities -----------------

def join_community(community_id: ObjectId, user_id: ObjectId) -> dict:
    require_user(user_id)
    require("community", community_id, "Community")
    updated = get_db()["community"].find_one_and_update(
        {"_id": community_id, "members": {"$ne": user_id}},
        {"$addToSet": {"members": user_id}, "$inc": {"memberCount": 1}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("User is already a member")
    logger.info("User %s joined community %s", user_id, community_id)
    return updated


def leave_community(community_id: ObjectId, user_id: ObjectId) -> dict:
    community = require("community", community_id, "Community")
    if community.get("admin") == user_id:
        raise DomainRuleError("Admin cannot leave the community. Transfer ownership first.")
    updated = get_db()["community"].find_one_and_update(
        {"_id": community_id, "members": user_id, "admin": {"$ne": user_id}},
        {"$pull": {"members": user_id, "moderators": user_id}, "$inc": {"memberCount": -1}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("User is not a member")
    logger.info("User %s left community %s", user_id, community_id)
    return updated


# ----------------- Deletion cascades -----------------

def _comment_subtree(root_id: ObjectId, session=None) -> List[ObjectId]:
    comments = get_db()["comment"]
    ids = [root_id]
    seen = {root_id}
    frontier = [root_id]
    while frontier:
        children = [
            c["_id"] for c in comments.find({"parentComment": {"$in": frontier}}, {"_id": 1}, session=session)
            if c["_id"] not in seen
        ]
        seen.update(children)
        ids.extend(children)
        frontier = children
    return ids


def _delete_comment_tree(comment: dict, session=None) -> int:
    db = get_db()
    ids = _comment_subtree(comment["_id"], session)
    removed = db["comment"].delete_many({"_id": {"$in": ids}}, session=session).deleted_count
    db["notification"].delete_many({"relatedComment": {"$in": ids}}, session=session)
    if removed:
        db["post"].update_one({"_id": comment["post"]}, {"$inc": {"commentsCount": -removed}}, session=session)
    return removed


def delete_comment(comment_id: ObjectId) -> int:
    comment = require("comment", comment_id, "Comment")
    removed = run_in_transaction(lambda session: _delete_comment_tree(comment, session))
    logger.info("Deleted comment %s and %d replies", comment_id, removed - 1)
    return removed


def _delete_post(post: dict, session=None):
    db = get_db()
    post_id = post["_id"]
    comment_ids = [c["_id"] for c in db["comment"].find({"post": post_id}, {"_id": 1}, session=session)]
    db["comment"].delete_many({"post": post_id}, session=session)
    db["notification"].delete_many(
        {"$or": [{"relatedPost": post_id}, {"relatedComment": {"$in": comment_ids}}]}, session=session
    )
    db["user"].update_one({"_id": post.get("author"), "postsCount": {"$gt": 0}}, {"$inc": {"postsCount": -1}}, session=session)
    if post.get("community") is not None:
        db["community"].update_one(
            {"_id": post["community"], "postCount": {"$gt": 0}}, {"$inc": {"postCount": -1}}, session=session
        )
    db["post"].delete_one({"_id": post_id}, session=session)


def delete_post(post_id: ObjectId):
    post = require("post", post_id, "Post")
    run_in_transaction(lambda session: _delete_post(post, session))
    logger.info("Deleted post %s", post_id)


def _delete_community(community: dict, session=None):
    db = get_db()
    db["post"].update_many({"community": community["_id"]}, {"$set": {"community": None}}, session=session)
    db["community"].delete_one({"_id": community["_id"]}, session=session)


def delete_community(community_id: ObjectId):
    community = require("community", community_id, "Community")
    run_in_transaction(lambda session: _delete_community(community, session))
    logger.info("Deleted community %s", community_id)


def delete_user(user_id: ObjectId):
    """Delete a user and every reference to them.

    Authored posts and comments go (with their replies), administered
    communities go, memberships, friend links, pending requests, reaction
    entries and notifications are cleaned up.
    """
    require_user(user_id)
    db = get_db()

    def apply(session):
        for post in list(db["post"].find({"author": user_id}, session=session)):
            _delete_post(post, session)
        for comment in list(db["comment"].find({"author": user_id}, session=session)):
            # may already be gone as a reply to an earlier comment
            if db["comment"].find_one({"_id": comment["_id"]}, {"_id": 1}, session=session):
                _delete_comment_tree(comment, session)
        for community in list(db["community"].find({"admin": user_id}, session=session)):
            _delete_community(community, session)

        db["community"].update_many(
            {"members": user_id},
            {"$pull": {"members": user_id, "moderators": user_id}, "$inc": {"memberCount": -1}},
            session=session,
        )
        db["community"].update_many({"moderators": user_id}, {"$pull": {"moderators": user_id}}, session=session)
        db["user"].update_many(
            {"$or": [{"friends": user_id}, {"friendRequestsSent": user_id}, {"friendRequestsReceived": user_id}]},
            {"$pull": {"friends": user_id, "friendRequestsSent": user_id, "friendRequestsReceived": user_id}},
            session=session,
        )
        reaction_key = f"reactions.{user_id}"
        for name in ("post", "comment"):
            db[name].update_many({reaction_key: {"$exists": True}}, {"$unset": {reaction_key: ""}}, session=session)
        db["notification"].delete_many({"$or": [{"recipient": user_id}, {"sender": user_id}]}, session=session)
        db["user"].delete_one({"_id": user_id}, session=session)

    run_in_transaction(apply)
    logger.info("Deleted user %s with owned content", user_id)
