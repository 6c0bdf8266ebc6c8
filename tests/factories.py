from examgrader.core.auth import create_token


def scenario_bundle():
    return {"questions": [{"question_id": "q1", "options": [{"id": "o1", "is_correct": False}, {"id": "o2", "is_correct": True}]}]}


def topic_bundle(topic_id="t1", n=10, prefix="q"):
    return {"questions": [
        {"question_id": f"{prefix}{i}", "topic_id": topic_id, "text": f"Question {i}",
         "options": [{"id": f"{prefix}{i}-a", "text": "right", "is_correct": True},
                     {"id": f"{prefix}{i}-b", "text": "wrong", "is_correct": False}]}
        for i in range(n)
    ]}


def answers_with_correct(n_correct, n=10, prefix="q"):
    return [{"question_id": f"{prefix}{i}", "selected_option_id": f"{prefix}{i}-a" if i < n_correct else f"{prefix}{i}-b"}
            for i in range(n)]


def auth(user_id):
    return {"Authorization": f"Bearer {create_token(user_id)}"}
