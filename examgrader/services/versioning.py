"""
Content versioning: freezes live questions into immutable, numbered snapshots.

Snapshots are append-only. A correction to a live question produces a new
snapshot at the next version; existing rows are never updated or deleted.
Concurrent writers may both claim the same next version; the loser rolls back,
re-reads and takes the following number, so a race yields two adjacent
snapshots with identical content rather than a lock.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Protocol, Union
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from examgrader.core.config import get_settings
from examgrader.core.errors import InvalidInputError, NotFoundError
from examgrader.models.orm import LiveOption, LiveQuestion, QuestionSnapshot
from examgrader.models.schemas import SnapshotOption

logger = logging.getLogger(__name__)

MAX_VERSION_RETRIES = 3
VERSION_CONSTRAINT = "uq_snapshot_question_version"

OptionLike = Union[SnapshotOption, dict]


@dataclass(frozen=True)
class LiveQuestionView:
    id: str
    text: str
    options: List[SnapshotOption] = field(default_factory=list)
    topic_id: Optional[str] = None
    explanation: Optional[str] = None


class LiveQuestionStore(Protocol):
    def get_question(self, question_id: str) -> Optional[LiveQuestionView]: ...


class SqlLiveQuestionStore:
    """Reads live questions from the ``live_questions``/``live_options`` tables."""

    def __init__(self, db: Session):
        self.db = db

    def get_question(self, question_id: str) -> Optional[LiveQuestionView]:
        q = self.db.get(LiveQuestion, question_id)
        if q is None:
            return None
        opts = self.db.scalars(
            select(LiveOption).where(LiveOption.question_id == question_id).order_by(LiveOption.position, LiveOption.id)
        ).all()
        return LiveQuestionView(
            id=q.id, text=q.text, topic_id=q.topic_id, explanation=q.explanation,
            options=[SnapshotOption(id=o.id, text=o.text, is_correct=bool(o.is_correct)) for o in opts],
        )


def _frozen_options(options: Iterable[OptionLike]) -> List[SnapshotOption]:
    out = []
    for o in options:
        opt = o if isinstance(o, SnapshotOption) else SnapshotOption.model_validate(o)
        out.append(SnapshotOption(id=opt.id, text=opt.text, is_correct=bool(opt.is_correct)))
    return out


def content_hash(text: str, options: List[SnapshotOption], explanation: Optional[str]) -> str:
    canon = json.dumps(
        {"text": text, "options": [o.model_dump() for o in options], "explanation": explanation},
        sort_keys=True, separators=(",", ":"),
    )
    return hashlib.sha256(canon.encode("utf-8")).hexdigest()


def snapshot_options(snap: QuestionSnapshot) -> List[SnapshotOption]:
    return [SnapshotOption.model_validate(o) for o in (snap.options or [])]


def latest_snapshot(db: Session, question_id: str) -> Optional[QuestionSnapshot]:
    return db.scalar(
        select(QuestionSnapshot).where(QuestionSnapshot.question_id == question_id)
        .order_by(QuestionSnapshot.version.desc()).limit(1)
    )


def get_snapshot(db: Session, snapshot_id: str) -> Optional[QuestionSnapshot]:
    return db.get(QuestionSnapshot, snapshot_id)


def get_snapshot_version(db: Session, question_id: str, version: int) -> Optional[QuestionSnapshot]:
    return db.scalar(
        select(QuestionSnapshot).where(QuestionSnapshot.question_id == question_id, QuestionSnapshot.version == version)
    )


def list_snapshots(db: Session, question_id: str) -> List[QuestionSnapshot]:
    return list(db.scalars(
        select(QuestionSnapshot).where(QuestionSnapshot.question_id == question_id).order_by(QuestionSnapshot.version)
    ).all())


def is_version_collision(exc: IntegrityError) -> bool:
    """True when ``exc`` comes from the (question_id, version) unique key and nothing else."""
    diag = getattr(exc.orig, "diag", None)
    name = getattr(diag, "constraint_name", None)
    if name:
        return name == VERSION_CONSTRAINT
    # sqlite names the columns instead of the constraint
    msg = str(exc.orig)
    return VERSION_CONSTRAINT in msg or "question_snapshots.question_id, question_snapshots.version" in msg


def _commit_snapshot(db: Session, question_id: str, stage: Callable[[], QuestionSnapshot]) -> QuestionSnapshot:
    # stage() must re-apply all of its pending writes on every call: a collision rolls the whole unit back.
    last_exc: Optional[IntegrityError] = None
    for n in range(1, MAX_VERSION_RETRIES + 1):
        snap = stage()
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if not is_version_collision(exc):
                raise
            last_exc = exc
            logger.warning("Snapshot version collision for question %s (try %d/%d)", question_id, n, MAX_VERSION_RETRIES)
            continue
        return snap
    raise last_exc


def _stage_snapshot(db: Session, question_id: str, text: str, options: List[SnapshotOption],
                    explanation: Optional[str], topic_id: Optional[str], dedupe: bool) -> QuestionSnapshot:
    digest = content_hash(text, options, explanation)
    latest = latest_snapshot(db, question_id)
    if dedupe and latest is not None and latest.content_hash == digest:
        return latest
    snap = QuestionSnapshot(
        id=str(uuid4()), question_id=question_id, version=(latest.version if latest else 0) + 1,
        topic_id=topic_id, text=text, options=[o.model_dump() for o in options],
        explanation=explanation, content_hash=digest,
    )
    db.add(snap)
    return snap


def create_snapshot(db: Session, question_id: str, text: str, options: Iterable[OptionLike],
                    explanation: Optional[str] = None, topic_id: Optional[str] = None,
                    questions: Optional[LiveQuestionStore] = None, dedupe: bool = False) -> QuestionSnapshot:
    """
    Freeze ``text``/``options`` as the next version of ``question_id``.

    Raises NotFoundError if the live store does not know the question.
    """
    store = questions or SqlLiveQuestionStore(db)
    live = store.get_question(question_id)
    if live is None:
        raise NotFoundError(f"Question {question_id} not found", question_id=question_id)
    opts = _frozen_options(options)
    if topic_id is None:
        topic_id = live.topic_id
    snap = _commit_snapshot(
        db, question_id, lambda: _stage_snapshot(db, question_id, text, opts, explanation, topic_id, dedupe)
    )
    logger.info("Snapshot %s created for question %s at version %d", snap.id, question_id, snap.version)
    return snap


def ensure_snapshot(db: Session, question_id: str, questions: Optional[LiveQuestionStore] = None,
                    dedupe: Optional[bool] = None) -> QuestionSnapshot:
    """Latest snapshot of ``question_id``, freezing the live question first if it was never snapshotted."""
    snap = latest_snapshot(db, question_id)
    if snap is not None:
        return snap
    store = questions or SqlLiveQuestionStore(db)
    live = store.get_question(question_id)
    if live is None:
        raise NotFoundError(f"Question {question_id} not found", question_id=question_id)
    if dedupe is None:
        dedupe = get_settings().SNAPSHOT_DEDUPE
    return create_snapshot(db, question_id, live.text, live.options, live.explanation, live.topic_id,
                           questions=store, dedupe=dedupe)


def revise_question(db: Session, question_id: str, text: Optional[str] = None,
                    options: Optional[Iterable[OptionLike]] = None, explanation: Optional[str] = None,
                    dedupe: Optional[bool] = None) -> QuestionSnapshot:
    """
    Edit the live question and append a snapshot of the result in the same unit.

    Options, when given, replace the live option set. Options without an id get a new one.
    """
    if db.get(LiveQuestion, question_id) is None:
        raise NotFoundError(f"Question {question_id} not found", question_id=question_id)
    new_opts = None
    if options is not None:
        new_opts = [o if isinstance(o, SnapshotOption) else SnapshotOption.model_validate(o) for o in options]
        if len(new_opts) < 2:
            raise InvalidInputError("A question needs at least two options", question_id=question_id)
        new_opts = [SnapshotOption(id=o.id or str(uuid4()), text=o.text, is_correct=bool(o.is_correct)) for o in new_opts]
        ids = [o.id for o in new_opts]
        if len(set(ids)) != len(ids):
            raise InvalidInputError("Duplicate option ids in revision", question_id=question_id)
        foreign = db.scalars(
            select(LiveOption.id).where(LiveOption.id.in_(ids), LiveOption.question_id != question_id)
        ).all()
        if foreign:
            raise InvalidInputError("Option ids belong to another question", question_id=question_id,
                                    option_ids=sorted(foreign))
    if dedupe is None:
        dedupe = get_settings().SNAPSHOT_DEDUPE
    store = SqlLiveQuestionStore(db)

    def stage() -> QuestionSnapshot:
        q = db.get(LiveQuestion, question_id)
        if text is not None:
            q.text = text
        if explanation is not None:
            q.explanation = explanation
        if new_opts is not None:
            db.execute(delete(LiveOption).where(LiveOption.question_id == question_id))
            for pos, o in enumerate(new_opts):
                db.add(LiveOption(id=o.id, question_id=question_id, position=pos, text=o.text, is_correct=bool(o.is_correct)))
        db.flush()
        live = store.get_question(question_id)
        return _stage_snapshot(db, question_id, live.text, _frozen_options(live.options),
                               live.explanation, live.topic_id, dedupe)

    snap = _commit_snapshot(db, question_id, stage)
    logger.info("Question %s revised; latest snapshot is version %d", question_id, snap.version)
    return snap
