"""
Attempt lifecycle: OPEN -> GRADED, nothing else.

An attempt embeds the bundle of question snapshots shown to the candidate at
start. The bundle is written once and is the only answer key grading uses.
Reads are owner-only and answer ``None`` to anyone else, so a non-owner cannot
tell a missing attempt from someone else's.
"""
import logging
from typing import List, Optional, Sequence, Union
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from examgrader.core.errors import InvalidInputError
from examgrader.models.orm import AnswerRecord, Attempt, utcnow
from examgrader.models.schemas import AttemptBundle, BundleQuestion, SnapshotOption
from examgrader.services.versioning import LiveQuestionStore, ensure_snapshot, snapshot_options

logger = logging.getLogger(__name__)


def parse_bundle(raw: Union[AttemptBundle, dict, None]) -> AttemptBundle:
    if isinstance(raw, AttemptBundle):
        return raw
    if not raw:
        raise InvalidInputError("Bundle must contain at least one question")
    try:
        return AttemptBundle.model_validate(raw)
    except ValidationError as exc:
        raise InvalidInputError("Invalid attempt bundle", errors=exc.errors(include_url=False, include_context=False, include_input=False))


def assemble_bundle(db: Session, question_ids: Sequence[str], reveal_key: bool = True,
                    questions: Optional[LiveQuestionStore] = None) -> AttemptBundle:
    """Build a bundle from the latest snapshot of each question, freezing unsnapshotted ones."""
    if not question_ids:
        raise InvalidInputError("At least one question is required")
    if len(set(question_ids)) != len(question_ids):
        raise InvalidInputError("Duplicate question ids")
    entries = []
    for qid in question_ids:
        snap = ensure_snapshot(db, qid, questions=questions)
        opts = snapshot_options(snap)
        if not reveal_key:
            opts = [SnapshotOption(id=o.id, text=o.text) for o in opts]
        entries.append(BundleQuestion(question_id=qid, snapshot_id=snap.id, topic_id=snap.topic_id,
                                      text=snap.text, options=opts))
    return parse_bundle({"questions": [e.model_dump() for e in entries]})


def start_attempt(db: Session, owner_id: str, exam_id: str,
                  bundle: Union[AttemptBundle, dict, None]) -> Attempt:
    if not owner_id:
        raise InvalidInputError("Missing owner id")
    if not exam_id:
        raise InvalidInputError("Missing exam id")
    parsed = parse_bundle(bundle)
    attempt = Attempt(id=str(uuid4()), owner_id=owner_id, exam_id=exam_id,
                      bundle=parsed.model_dump(), started_at=utcnow())
    db.add(attempt)
    db.commit()
    db.refresh(attempt)
    logger.info("Attempt %s started by %s for exam %s (%d questions)",
                attempt.id, owner_id, exam_id, len(parsed.questions))
    return attempt


def get_attempt(db: Session, attempt_id: str, requester_id: str) -> Optional[Attempt]:
    return db.scalar(select(Attempt).where(Attempt.id == attempt_id, Attempt.owner_id == requester_id))


def list_answers(db: Session, attempt_id: str, requester_id: str) -> Optional[List[AnswerRecord]]:
    if get_attempt(db, attempt_id, requester_id) is None:
        return None
    return list(db.scalars(
        select(AnswerRecord).where(AnswerRecord.attempt_id == attempt_id).order_by(AnswerRecord.position)
    ).all())
