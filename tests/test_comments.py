from bson import ObjectId


def test_create_comment_counts_and_notifies(client, mongo_db, make_user, make_post):
    author = make_user()
    commenter = make_user(name="Commenter")
    post_id = make_post(author=author)

    response = client.post("/api/comments", json={"content": "Great read", "post": post_id, "author": commenter})
    assert response.status_code == 201
    comment = response.json()["data"]
    assert comment["author"]["name"] == "Commenter"
    assert comment["post"]["title"] == "A post title"
    assert comment["parentComment"] is None
    assert comment["isEdited"] is False

    assert mongo_db["post"].find_one({"_id": ObjectId(post_id)})["commentsCount"] == 1
    notification = mongo_db["notification"].find_one({"recipient": ObjectId(author)})
    assert notification["type"] == "comment"
    assert notification["sender"] == ObjectId(commenter)
    assert notification["relatedComment"] == ObjectId(comment["id"])


def test_commenting_on_own_post_sends_no_notification(client, mongo_db, make_user, make_post, make_comment):
    author = make_user()
    post_id = make_post(author=author)
    make_comment(post_id, author=author)
    assert mongo_db["notification"].count_documents({}) == 0


def test_create_comment_validates_references(client, make_user, make_post, make_comment):
    user = make_user()
    post_id = make_post()
    other_post = make_post()
    foreign_parent = make_comment(other_post)

    missing_post = client.post("/api/comments", json={"content": "hi", "post": str(ObjectId()), "author": user})
    assert missing_post.status_code == 404

    bad_id = client.post("/api/comments", json={"content": "hi", "post": "123", "author": user})
    assert bad_id.status_code == 400

    cross_post = client.post(
        "/api/comments",
        json={"content": "hi", "post": post_id, "author": user, "parentComment": foreign_parent},
    )
    assert cross_post.status_code == 400

    empty = client.post("/api/comments", json={"content": "   ", "post": post_id, "author": user})
    assert empty.status_code == 400


def test_list_comments_by_post_and_parent(client, make_post, make_comment):
    post_id = make_post()
    other_post = make_post()
    top = make_comment(post_id, content="top level")
    make_comment(post_id, content="reply", parentComment=top)
    make_comment(other_post, content="elsewhere")

    on_post = client.get("/api/comments", params={"postId": post_id}).json()
    assert on_post["pagination"]["total"] == 2
    assert on_post["pagination"]["limit"] == 20

    top_level = client.get("/api/comments", params={"postId": post_id, "parentId": "null"}).json()["data"]
    assert [c["content"] for c in top_level] == ["top level"]

    replies = client.get("/api/comments", params={"parentId": top}).json()["data"]
    assert [c["content"] for c in replies] == ["reply"]


def test_put_marks_comment_edited(client, make_post, make_comment):
    comment_id = make_comment(make_post())
    response = client.put(f"/api/comments/{comment_id}", json={"content": "Edited text"})
    assert response.status_code == 200
    assert response.json()["data"]["content"] == "Edited text"
    assert response.json()["data"]["isEdited"] is True
    assert client.put(f"/api/comments/{ObjectId()}", json={"content": "x"}).status_code == 404


def test_patch_comment_actions(client, make_user, make_post, make_comment):
    comment_id = make_comment(make_post())
    user = make_user()

    liked = client.patch(f"/api/comments/{comment_id}", json={"action": "like", "userId": user}).json()["data"]
    assert liked["reactionCounts"]["like"] == 1

    edited = client.patch(f"/api/comments/{comment_id}", json={"action": "update", "content": "changed"})
    assert edited.json()["data"]["isEdited"] is True

    unliked = client.patch(f"/api/comments/{comment_id}", json={"action": "unlike", "userId": user}).json()["data"]
    assert unliked["reactionCount"] == 0

    assert client.patch(f"/api/comments/{comment_id}", json={"action": "share"}).status_code == 400


def test_delete_comment_removes_reply_subtree(client, mongo_db, make_post, make_comment):
    post_id = make_post()
    root = make_comment(post_id)
    reply = make_comment(post_id, parentComment=root)
    make_comment(post_id, parentComment=reply)
    survivor = make_comment(post_id)

    response = client.delete(f"/api/comments/{root}")
    assert response.status_code == 200
    assert response.json()["data"] == {"deleted": 3}

    remaining = [c["_id"] for c in mongo_db["comment"].find({"post": ObjectId(post_id)})]
    assert remaining == [ObjectId(survivor)]
    assert mongo_db["post"].find_one({"_id": ObjectId(post_id)})["commentsCount"] == 1
    assert client.get(f"/api/comments/{reply}").status_code == 404
