from bson import ObjectId


def user_doc(mongo_db, user_id):
    return mongo_db["user"].find_one({"_id": ObjectId(user_id)})


def pair(user, friend):
    return {"userId": user, "friendId": friend}


def test_request_then_accept_end_to_end(client, mongo_db, make_user):
    u1 = make_user(name="First")
    u2 = make_user(name="Second")

    sent = client.post("/api/friends/request", json=pair(u1, u2))
    assert sent.status_code == 200
    assert sent.json()["message"] == "Friend request sent successfully"
    assert ObjectId(u2) in user_doc(mongo_db, u1)["friendRequestsSent"]
    assert ObjectId(u1) in user_doc(mongo_db, u2)["friendRequestsReceived"]

    received = client.get("/api/friends/request", params={"userId": u2}).json()
    assert [r["name"] for r in received["data"]] == ["First"]
    outgoing = client.get("/api/friends/request", params={"userId": u1, "type": "sent"}).json()
    assert [r["name"] for r in outgoing["data"]] == ["Second"]

    accepted = client.post("/api/friends/accept", json=pair(u2, u1))
    assert accepted.status_code == 200

    first, second = user_doc(mongo_db, u1), user_doc(mongo_db, u2)
    assert first["friends"] == [ObjectId(u2)]
    assert second["friends"] == [ObjectId(u1)]
    for doc in (first, second):
        assert doc["friendRequestsSent"] == []
        assert doc["friendRequestsReceived"] == []

    types = sorted(n["type"] for n in mongo_db["notification"].find())
    assert types == ["friend_accept", "friend_request"]

    friends = client.get("/api/friends/list", params={"userId": u1}).json()
    assert friends["count"] == 1
    assert friends["data"][0]["name"] == "Second"


def test_reject_leaves_no_friendship(client, mongo_db, make_user):
    u1, u2 = make_user(), make_user()
    client.post("/api/friends/request", json=pair(u1, u2))

    rejected = client.post("/api/friends/reject", json=pair(u2, u1))
    assert rejected.status_code == 200
    for user_id in (u1, u2):
        doc = user_doc(mongo_db, user_id)
        assert doc["friends"] == []
        assert doc["friendRequestsSent"] == []
        assert doc["friendRequestsReceived"] == []

    assert client.post("/api/friends/reject", json=pair(u2, u1)).status_code == 404


def test_sender_can_cancel(client, mongo_db, make_user):
    u1, u2 = make_user(), make_user()
    client.post("/api/friends/request", json=pair(u1, u2))
    assert client.post("/api/friends/cancel", json=pair(u1, u2)).status_code == 200
    assert user_doc(mongo_db, u2)["friendRequestsReceived"] == []
    assert client.post("/api/friends/accept", json=pair(u2, u1)).status_code == 404


def test_request_guards(client, make_user):
    u1, u2 = make_user(), make_user()

    self_request = client.post("/api/friends/request", json=pair(u1, u1))
    assert self_request.status_code == 400
    assert self_request.json()["error"] == "Cannot send friend request to yourself"

    assert client.post("/api/friends/request", json=pair(u1, str(ObjectId()))).status_code == 404
    assert client.post("/api/friends/request", json=pair(u1, "bogus")).status_code == 400
    assert client.post("/api/friends/request", json={"userId": u1}).status_code == 400

    assert client.post("/api/friends/request", json=pair(u1, u2)).status_code == 200
    duplicate = client.post("/api/friends/request", json=pair(u1, u2))
    assert duplicate.status_code == 409
    reverse = client.post("/api/friends/request", json=pair(u2, u1))
    assert reverse.status_code == 409

    client.post("/api/friends/accept", json=pair(u2, u1))
    again = client.post("/api/friends/request", json=pair(u1, u2))
    assert again.status_code == 409
    assert again.json()["error"] == "Already friends"


def test_accept_without_request_is_404(client, mongo_db, make_user):
    u1, u2 = make_user(), make_user()
    assert client.post("/api/friends/accept", json=pair(u1, u2)).status_code == 404
    assert user_doc(mongo_db, u1)["friends"] == []


def test_accept_completes_a_half_applied_acceptance(client, mongo_db, make_user):
    u1, u2 = make_user(), make_user()
    client.post("/api/friends/request", json=pair(u1, u2))
    # receiver side written, sender side not
    mongo_db["user"].update_one(
        {"_id": ObjectId(u2)},
        {"$pull": {"friendRequestsReceived": ObjectId(u1)}, "$addToSet": {"friends": ObjectId(u1)}},
    )

    assert client.post("/api/friends/accept", json=pair(u2, u1)).status_code == 200
    assert user_doc(mongo_db, u1)["friends"] == [ObjectId(u2)]
    assert user_doc(mongo_db, u1)["friendRequestsSent"] == []


def test_unfriend_is_symmetric(client, mongo_db, make_user):
    u1, u2 = make_user(), make_user()
    client.post("/api/friends/request", json=pair(u1, u2))
    client.post("/api/friends/accept", json=pair(u2, u1))

    removed = client.request("DELETE", "/api/friends/list", json=pair(u1, u2))
    assert removed.status_code == 200
    assert user_doc(mongo_db, u1)["friends"] == []
    assert user_doc(mongo_db, u2)["friends"] == []

    assert client.request("DELETE", "/api/friends/list", json=pair(u1, u2)).status_code == 404


def test_friend_lists_require_user(client):
    assert client.get("/api/friends/list").status_code == 400
    assert client.get("/api/friends/list", params={"userId": str(ObjectId())}).status_code == 404
    assert client.get("/api/friends/request", params={"userId": "x"}).status_code == 400


def test_crossing_requests_never_leave_both_pending(client, mongo_db, make_user):
    u1, u2 = make_user(), make_user()
    # u2's request to u1 has written its own side but not u1's yet
    mongo_db["user"].update_one({"_id": ObjectId(u2)}, {"$addToSet": {"friendRequestsSent": ObjectId(u1)}})

    response = client.post("/api/friends/request", json=pair(u1, u2))
    assert response.status_code == 409
    assert user_doc(mongo_db, u1)["friendRequestsSent"] == []
    assert user_doc(mongo_db, u2)["friendRequestsReceived"] == []
    assert mongo_db["notification"].count_documents({}) == 0
