"""
Grading and submission.

Submitting an attempt grades the answers against the bundle frozen at start,
then in one transaction:

    1. flips the attempt to graded with ``UPDATE ... WHERE submitted_at IS NULL``;
       zero rows means another submit already won and the unit is abandoned,
    2. writes one AnswerRecord per submitted answer,
    3. folds the per-topic samples into the owner's weakness weights.

Either everything commits or nothing does. Duplicate or concurrent submits
therefore see ``ConflictError`` and leave no writes behind.

Answers that resolve to no option are graded incorrect and still recorded,
flagged ``unmatched`` in their result payload.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import insert, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from examgrader.core.errors import ConflictError, GradingError, InvalidInputError, NotFoundError, UnauthorizedError
from examgrader.models.orm import AnswerRecord, Attempt, utcnow
from examgrader.models.schemas import AnswerIn, AnswerResult, AttemptBundle, BundleQuestion, SnapshotOption, TopicSample
from examgrader.services.versioning import LiveQuestionStore, ensure_snapshot, get_snapshot, snapshot_options
from examgrader.services.weakness import apply_topic_stats

logger = logging.getLogger(__name__)

KeyLookup = Callable[[BundleQuestion], Optional[List[SnapshotOption]]]


@dataclass
class GradedAnswer:
    position: int
    question_id: Optional[str]
    question_version_id: Optional[str]
    topic_id: Optional[str]
    selected_option_id: Optional[str]
    is_correct: bool
    result: AnswerResult
    time_taken_ms: Optional[int] = None


@dataclass
class GradeSheet:
    answers: List[GradedAnswer] = field(default_factory=list)
    correct_count: int = 0
    topic_stats: Dict[str, TopicSample] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.answers)

    @property
    def score(self) -> float:
        return 100.0 * self.correct_count / self.total if self.total else 0.0

    @property
    def unmatched(self) -> List[GradedAnswer]:
        return [a for a in self.answers if a.result.unmatched]


@dataclass
class SubmitResult:
    attempt: Attempt
    score: float
    correct_count: int
    total: int


def index_bundle(bundle: AttemptBundle) -> Tuple[Dict[str, BundleQuestion], Dict[str, BundleQuestion]]:
    by_question, by_snapshot = {}, {}
    for q in bundle.questions:
        if q.question_id:
            by_question[q.question_id] = q
        if q.snapshot_id:
            by_snapshot[q.snapshot_id] = q
    return by_question, by_snapshot


def resolve_entry(answer: AnswerIn, by_question: Dict[str, BundleQuestion],
                  by_snapshot: Dict[str, BundleQuestion]) -> Optional[BundleQuestion]:
    if answer.question_id and answer.question_id in by_question:
        return by_question[answer.question_id]
    if answer.question_version_id and answer.question_version_id in by_snapshot:
        return by_snapshot[answer.question_version_id]
    return None


def resolve_option(options: Sequence[SnapshotOption], answer: AnswerIn) -> Tuple[Optional[SnapshotOption], str]:
    """Match by option id first, then by literal text. Returns the option and how it matched."""
    if answer.selected_option_id:
        for o in options:
            if o.id is not None and str(o.id) == str(answer.selected_option_id):
                return o, "option_id"
    if answer.selected_text is not None:
        for o in options:
            if o.text == answer.selected_text:
                return o, "text"
    return None, "none"


def _key_option(key: Sequence[SnapshotOption], shown: SnapshotOption) -> Optional[SnapshotOption]:
    if shown.id is not None:
        for o in key:
            if o.id == shown.id:
                return o
    for o in key:
        if o.text == shown.text:
            return o
    return None


def grade_answers(bundle: AttemptBundle, answers: Sequence[AnswerIn],
                  answer_key: Optional[KeyLookup] = None) -> GradeSheet:
    """
    Grade ``answers`` against ``bundle`` without touching storage.

    ``answer_key`` supplies correctness for entries whose options were shown
    with the flags withheld; without it such answers count as incorrect.
    """
    by_question, by_snapshot = index_bundle(bundle)
    sheet = GradeSheet()
    timing: Dict[str, List[int]] = {}

    for pos, ans in enumerate(answers):
        entry = resolve_entry(ans, by_question, by_snapshot)
        chosen, matched_by = None, "none"
        correct_opt = None
        is_correct = False
        if entry is not None:
            chosen, matched_by = resolve_option(entry.options, ans)
            key = list(entry.options) if entry.has_key else (answer_key(entry) if answer_key else None) or []
            correct_opt = next((o for o in key if o.is_correct), None)
            if chosen is not None:
                keyed = chosen if entry.has_key else _key_option(key, chosen)
                is_correct = bool(keyed is not None and keyed.is_correct)

        result = AnswerResult(
            selected_text=chosen.text if chosen is not None else ans.selected_text,
            correct_option_id=correct_opt.id if correct_opt else None,
            correct_option_text=correct_opt.text if correct_opt else None,
            matched_by=matched_by,
            unmatched=chosen is None,
        )
        topic_id = entry.topic_id if entry is not None else None
        sheet.answers.append(GradedAnswer(
            position=pos,
            question_id=entry.question_id if entry is not None else ans.question_id,
            question_version_id=entry.snapshot_id if entry is not None else ans.question_version_id,
            topic_id=topic_id,
            selected_option_id=chosen.id if chosen is not None else None,
            is_correct=is_correct, result=result, time_taken_ms=ans.time_taken_ms,
        ))
        if is_correct:
            sheet.correct_count += 1
        if topic_id:
            stat = sheet.topic_stats.setdefault(topic_id, TopicSample())
            stat.total += 1
            if is_correct:
                stat.correct += 1
            if ans.time_taken_ms is not None:
                timing.setdefault(topic_id, []).append(ans.time_taken_ms)

    for topic_id, times in timing.items():
        sheet.topic_stats[topic_id].time_ms = sum(times) / len(times)
    return sheet


def snapshot_key_lookup(db: Session, questions: Optional[LiveQuestionStore] = None) -> KeyLookup:
    """Answer key from the frozen snapshot an entry names, or the latest one when it names none."""
    def lookup(entry: BundleQuestion) -> Optional[List[SnapshotOption]]:
        snap = get_snapshot(db, entry.snapshot_id) if entry.snapshot_id else None
        if snap is None and entry.question_id:
            try:
                snap = ensure_snapshot(db, entry.question_id, questions=questions)
            except NotFoundError:
                logger.warning("No answer key for question %s; grading its answers as incorrect", entry.question_id)
                return None
        return snapshot_options(snap) if snap is not None else None
    return lookup


def _parse_answers(answers: Sequence[Union[AnswerIn, dict]]) -> List[AnswerIn]:
    if not answers:
        raise InvalidInputError("No answers provided")
    try:
        return [a if isinstance(a, AnswerIn) else AnswerIn.model_validate(a) for a in answers]
    except ValidationError as exc:
        raise InvalidInputError("Invalid answers", errors=exc.errors(include_url=False, include_context=False, include_input=False))


def _load_bundle(attempt: Attempt) -> AttemptBundle:
    try:
        return AttemptBundle.model_validate(attempt.bundle or {})
    except ValidationError:
        raise InvalidInputError("Malformed attempt snapshot", attempt_id=attempt.id)


def _answer_rows(attempt_id: str, owner_id: str, sheet: GradeSheet) -> List[dict]:
    now = utcnow()
    return [
        {
            "id": str(uuid4()), "attempt_id": attempt_id, "owner_id": owner_id, "position": a.position,
            "question_id": a.question_id, "question_version_id": a.question_version_id,
            "selected_option_id": a.selected_option_id, "is_correct": a.is_correct,
            "result": a.result.model_dump(), "created_at": now,
        }
        for a in sheet.answers
    ]


def _commit_submission(db: Session, attempt_id: str, owner_id: str, exam_id: str, sheet: GradeSheet,
                       duration_sec: Optional[int], alpha: Optional[float], bulk: bool) -> SubmitResult:
    try:
        res = db.execute(
            update(Attempt)
            .where(Attempt.id == attempt_id, Attempt.submitted_at.is_(None))
            .values(submitted_at=utcnow(), duration_sec=duration_sec, score=sheet.score)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise ConflictError("Attempt already submitted", attempt_id)
        rows = _answer_rows(attempt_id, owner_id, sheet)
        if bulk:
            db.execute(insert(AnswerRecord), rows)
        else:
            for r in rows:
                db.add(AnswerRecord(**r))
                db.flush()
        apply_topic_stats(db, owner_id, exam_id, sheet.topic_stats, alpha)
        db.commit()
    except ConflictError:
        db.rollback()
        winner = db.get(Attempt, attempt_id, populate_existing=True)
        logger.warning("Submit for attempt %s lost to a concurrent submission", attempt_id)
        raise ConflictError("Attempt already submitted", attempt_id, score=winner.score if winner else None)
    except Exception:
        db.rollback()
        raise
    attempt = db.get(Attempt, attempt_id, populate_existing=True)
    return SubmitResult(attempt=attempt, score=sheet.score, correct_count=sheet.correct_count, total=sheet.total)


def submit_attempt(db: Session, attempt_id: str, caller_id: str, answers: Sequence[Union[AnswerIn, dict]],
                   duration_sec: Optional[int] = None, alpha: Optional[float] = None,
                   questions: Optional[LiveQuestionStore] = None) -> SubmitResult:
    """
    Grade and close an open attempt.

    Raises InvalidInputError (no answers, malformed bundle), NotFoundError,
    UnauthorizedError (caller is not the owner) or ConflictError (already
    graded, including a concurrent duplicate). A failed call leaves the
    attempt open with no side effects.
    """
    parsed = _parse_answers(answers)
    if duration_sec is not None and duration_sec < 0:
        raise InvalidInputError("duration_sec must be non-negative")

    attempt = db.get(Attempt, attempt_id, populate_existing=True)
    if attempt is None:
        raise NotFoundError("Attempt not found", attempt_id=attempt_id)
    if str(attempt.owner_id) != str(caller_id):
        raise UnauthorizedError("Attempt does not belong to caller", attempt_id=attempt_id)
    if attempt.submitted_at is not None:
        raise ConflictError("Attempt already submitted", attempt_id, score=attempt.score)

    owner_id, exam_id = attempt.owner_id, attempt.exam_id
    bundle = _load_bundle(attempt)
    sheet = grade_answers(bundle, parsed, snapshot_key_lookup(db, questions))
    for a in sheet.unmatched:
        logger.warning("Attempt %s answer %d matched no option (question %s)", attempt_id, a.position, a.question_id)

    try:
        try:
            result = _commit_submission(db, attempt_id, owner_id, exam_id, sheet, duration_sec, alpha, bulk=True)
        except GradingError:
            raise
        except SQLAlchemyError as exc:
            logger.warning("Bulk write failed for attempt %s, retrying row by row: %s", attempt_id, exc)
            result = _commit_submission(db, attempt_id, owner_id, exam_id, sheet, duration_sec, alpha, bulk=False)
    except GradingError:
        raise
    except Exception:
        logger.exception("Internal fault grading attempt %s (owner %s)", attempt_id, owner_id)
        raise

    logger.info("Attempt %s graded for %s: %d/%d (%.1f)", attempt_id, owner_id,
                result.correct_count, result.total, result.score)
    return result
