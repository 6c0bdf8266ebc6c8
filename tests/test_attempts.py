import pytest

from examgrader.core.errors import InvalidInputError, NotFoundError
from examgrader.models.schemas import AttemptBundle
from examgrader.services.attempts import assemble_bundle, get_attempt, list_answers, start_attempt
from examgrader.services.versioning import revise_question

from tests.factories import scenario_bundle


def test_start_creates_open_attempt(db):
    attempt = start_attempt(db, "u1", "exam1", scenario_bundle())
    assert attempt.id
    assert attempt.state == "open"
    assert attempt.submitted_at is None
    assert attempt.started_at is not None
    assert attempt.score is None
    assert AttemptBundle.model_validate(attempt.bundle).questions[0].question_id == "q1"


@pytest.mark.parametrize("bundle", [
    None,
    {},
    {"questions": []},
    {"questions": [{"question_id": "q1", "options": [{"id": "o1"}]}]},
    {"questions": [{"options": [{"id": "o1"}, {"id": "o2"}]}]},
    {"questions": [
        {"question_id": "q1", "options": [{"id": "o1"}, {"id": "o2"}]},
        {"question_id": "q1", "options": [{"id": "o3"}, {"id": "o4"}]},
    ]},
    {"questions": "not a list"},
])
def test_start_rejects_bad_bundles(db, bundle):
    with pytest.raises(InvalidInputError):
        start_attempt(db, "u1", "exam1", bundle)


def test_start_requires_owner_and_exam(db):
    with pytest.raises(InvalidInputError):
        start_attempt(db, "", "exam1", scenario_bundle())
    with pytest.raises(InvalidInputError):
        start_attempt(db, "u1", "", scenario_bundle())


def test_get_is_owner_only(db):
    attempt = start_attempt(db, "u1", "exam1", scenario_bundle())
    assert get_attempt(db, attempt.id, "u1").id == attempt.id
    assert get_attempt(db, attempt.id, "intruder") is None
    assert get_attempt(db, "missing", "u1") is None
    assert list_answers(db, attempt.id, "intruder") is None
    assert list_answers(db, attempt.id, "u1") == []


def test_assemble_bundle_from_live_content(db, seed_question):
    seed_question("q1")
    seed_question("q2", text="What is 3 * 3?", topic_id="mult", options=[("6", False), ("9", True)])
    bundle = assemble_bundle(db, ["q1", "q2"], reveal_key=False)
    assert [q.question_id for q in bundle.questions] == ["q1", "q2"]
    assert all(q.snapshot_id for q in bundle.questions)
    assert bundle.questions[1].topic_id == "mult"
    assert all(o.is_correct is None for q in bundle.questions for o in q.options)

    revealed = assemble_bundle(db, ["q2"])
    assert [o.is_correct for o in revealed.questions[0].options] == [False, True]


def test_assemble_bundle_rejects_bad_question_lists(db, seed_question):
    seed_question("q1")
    with pytest.raises(InvalidInputError):
        assemble_bundle(db, [])
    with pytest.raises(InvalidInputError):
        assemble_bundle(db, ["q1", "q1"])
    with pytest.raises(NotFoundError):
        assemble_bundle(db, ["q1", "ghost"])


def test_bundle_is_frozen_against_live_edits(db, seed_question):
    seed_question("q1", text="Original?", options=[("yes", True), ("no", False)])
    attempt = start_attempt(db, "u1", "exam1", assemble_bundle(db, ["q1"]))
    revise_question(db, "q1", text="Edited?", options=[{"text": "yes", "is_correct": False}, {"text": "no", "is_correct": True}])

    stored = AttemptBundle.model_validate(get_attempt(db, attempt.id, "u1").bundle)
    assert stored.questions[0].text == "Original?"
    assert [o.is_correct for o in stored.questions[0].options] == [True, False]
