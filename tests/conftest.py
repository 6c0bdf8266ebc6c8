import pytest
from fastapi.testclient import TestClient

from examgrader.core.database import build_engine, build_sessionmaker, get_db, init_db
from examgrader.models.orm import LiveOption, LiveQuestion


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'grader.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def seed_question(db):
    def _seed(qid, text="What is 2 + 2?", topic_id="arith", options=None, explanation=None):
        options = options or [("4", True), ("5", False), ("22", False)]
        db.add(LiveQuestion(id=qid, topic_id=topic_id, text=text, explanation=explanation))
        for pos, (opt_text, correct) in enumerate(options):
            db.add(LiveOption(id=f"{qid}-o{pos}", question_id=qid, position=pos, text=opt_text, is_correct=correct))
        db.commit()
        return qid
    return _seed


@pytest.fixture
def client(session_factory):
    from examgrader.main import app

    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
