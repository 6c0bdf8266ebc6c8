from tests.factories import auth, scenario_bundle


def _start(client, user="u1", bundle=None, exam_id="exam1"):
    r = client.post("/v1/attempts", json={"exam_id": exam_id, "bundle": bundle or scenario_bundle()}, headers=auth(user))
    assert r.status_code == 201, r.text
    return r.json()["attempt_id"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_attempt_flow(client):
    attempt_id = _start(client)

    r = client.get(f"/v1/attempts/{attempt_id}", headers=auth("u1"))
    assert r.status_code == 200
    body = r.json()
    assert body["state"] == "open"
    assert all(o["is_correct"] is None for o in body["bundle"]["questions"][0]["options"])

    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=auth("u1"),
                    json={"answers": [{"question_id": "q1", "selected_option_id": "o2"}], "duration_sec": 30})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["score"] == 100
    assert (body["correct_count"], body["total"]) == (1, 1)
    assert body["attempt"]["state"] == "graded"
    assert body["attempt"]["duration_sec"] == 30
    # once graded the key is shown again
    assert [o["is_correct"] for o in body["attempt"]["bundle"]["questions"][0]["options"]] == [False, True]

    r = client.get(f"/v1/attempts/{attempt_id}/answers", headers=auth("u1"))
    assert r.status_code == 200
    rows = r.json()
    assert len(rows) == 1
    assert rows[0]["is_correct"] is True
    assert rows[0]["result"]["correct_option_id"] == "o2"


def test_weaknesses_endpoint(client):
    bundle = {"questions": [
        {"question_id": "q1", "topic_id": "algebra", "options": [{"id": "a", "is_correct": True}, {"id": "b", "is_correct": False}]},
        {"question_id": "q2", "topic_id": "geometry", "options": [{"id": "c", "is_correct": True}, {"id": "d", "is_correct": False}]},
    ]}
    attempt_id = _start(client, bundle=bundle)
    client.post(f"/v1/attempts/{attempt_id}/submit", headers=auth("u1"),
                json={"answers": [{"question_id": "q1", "selected_option_id": "b"}, {"question_id": "q2", "selected_option_id": "c"}]})

    r = client.get("/v1/weaknesses", params={"exam_id": "exam1"}, headers=auth("u1"))
    assert r.status_code == 200
    assert [(w["topic_id"], w["weight"]) for w in r.json()] == [("algebra", 1.0), ("geometry", 0.0)]
    assert r.json()[0]["meta"]["attempt_count"] == 1

    assert client.get("/v1/weaknesses", headers=auth("someone-else")).json() == []


def test_double_submit_is_conflict(client):
    attempt_id = _start(client)
    payload = {"answers": [{"question_id": "q1", "selected_option_id": "o2"}]}
    assert client.post(f"/v1/attempts/{attempt_id}/submit", json=payload, headers=auth("u1")).status_code == 200

    r = client.post(f"/v1/attempts/{attempt_id}/submit", json=payload, headers=auth("u1"))
    assert r.status_code == 409
    err = r.json()["error"]
    assert err["type"] == "conflict"
    assert err["attempt_id"] == attempt_id
    assert err["score"] == 100


def test_other_users_cannot_read_or_submit(client):
    attempt_id = _start(client)
    r = client.get(f"/v1/attempts/{attempt_id}", headers=auth("intruder"))
    assert r.status_code == 404
    assert r.json()["error"]["type"] == "not_found"
    assert client.get(f"/v1/attempts/{attempt_id}/answers", headers=auth("intruder")).status_code == 404

    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=auth("intruder"),
                    json={"answers": [{"question_id": "q1", "selected_option_id": "o2"}]})
    assert r.status_code == 403
    assert r.json()["error"]["type"] == "unauthorized"


def test_submit_unknown_attempt(client):
    r = client.post("/v1/attempts/nope/submit", headers=auth("u1"),
                    json={"answers": [{"question_id": "q1", "selected_option_id": "o2"}]})
    assert r.status_code == 404
    assert r.json()["error"]["type"] == "not_found"


def test_invalid_inputs_are_422(client):
    r = client.post("/v1/attempts", headers=auth("u1"),
                    json={"exam_id": "exam1", "bundle": {"questions": [{"question_id": "q1", "options": [{"id": "o1"}]}]}})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "invalid_input"

    r = client.post("/v1/attempts", headers=auth("u1"), json={"exam_id": "exam1"})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "invalid_input"

    attempt_id = _start(client)
    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=auth("u1"), json={"answers": []})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "invalid_input"


def test_start_from_question_ids(client, seed_question):
    seed_question("q1")
    r = client.post("/v1/attempts", headers=auth("u1"), json={"exam_id": "exam1", "question_ids": ["q1"]})
    assert r.status_code == 201, r.text
    attempt_id = r.json()["attempt_id"]

    r = client.post(f"/v1/attempts/{attempt_id}/submit", headers=auth("u1"),
                    json={"answers": [{"question_id": "q1", "selected_text": "4"}]})
    assert r.status_code == 200
    assert r.json()["score"] == 100

    r = client.post("/v1/attempts", headers=auth("u1"), json={"exam_id": "exam1", "question_ids": ["ghost"]})
    assert r.status_code == 404


def test_snapshot_endpoints(client, seed_question):
    seed_question("q1")
    assert client.get("/v1/questions/q1/snapshots/latest", headers=auth("author")).status_code == 404

    r = client.post("/v1/questions/q1/revisions", headers=auth("author"),
                    json={"text": "What is 2 + 3?", "options": [{"text": "5", "is_correct": True}, {"text": "6", "is_correct": False}]})
    assert r.status_code == 201, r.text
    snap = r.json()
    assert snap["version"] == 1
    assert [o["text"] for o in snap["options"]] == ["5", "6"]
    assert all("is_correct" not in o for o in snap["options"])

    latest = client.get("/v1/questions/q1/snapshots/latest", headers=auth("author")).json()
    assert latest["id"] == snap["id"]
    assert client.get("/v1/questions/q1/snapshots/1", headers=auth("author")).json()["text"] == "What is 2 + 3?"
    assert client.get("/v1/questions/q1/snapshots/9", headers=auth("author")).status_code == 404
    assert len(client.get("/v1/questions/q1/snapshots", headers=auth("author")).json()) == 1

    r = client.post("/v1/questions/q1/revisions", headers=auth("author"), json={"options": [{"text": "lonely"}]})
    assert r.status_code == 422


def test_requests_need_a_valid_token(client):
    assert client.get("/v1/weaknesses").status_code in (401, 403)
    r = client.get("/v1/weaknesses", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_revision_with_clashing_option_ids_is_422(client, seed_question):
    seed_question("q1")
    seed_question("q2")
    r = client.post("/v1/questions/q2/revisions", headers=auth("author"),
                    json={"options": [{"id": "dup", "text": "a", "is_correct": True}, {"id": "dup", "text": "b"}]})
    assert r.status_code == 422
    assert r.json()["error"]["type"] == "invalid_input"

    r = client.post("/v1/questions/q2/revisions", headers=auth("author"),
                    json={"options": [{"id": "q1-o0", "text": "a", "is_correct": True}, {"id": "x", "text": "b"}]})
    assert r.status_code == 422
    assert r.json()["error"]["option_ids"] == ["q1-o0"]
