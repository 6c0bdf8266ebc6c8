from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Literal
from datetime import datetime
from sqlalchemy.orm import Session
from examgrader.core.auth import get_current_user, TokenData
from examgrader.core.config import get_settings
from examgrader.core.database import get_db
from examgrader.core.errors import InvalidInputError
from examgrader.models.orm import Attempt
from examgrader.models.schemas import AnswerIn, AnswerResult, AttemptBundle, SnapshotOption
from examgrader.services.attempts import assemble_bundle, get_attempt, list_answers, start_attempt
from examgrader.services.grading import submit_attempt

router = APIRouter()

class StartAttemptIn(BaseModel):
  exam_id: str = Field(min_length=1)
  bundle: Optional[AttemptBundle] = None
  question_ids: Optional[List[str]] = None

class StartAttemptOut(BaseModel):
  attempt_id: str
  started_at: datetime

class AttemptOut(BaseModel):
  id: str
  owner_id: str
  exam_id: str
  state: Literal["open","graded"]
  started_at: datetime
  submitted_at: Optional[datetime] = None
  duration_sec: Optional[int] = None
  score: Optional[float] = None
  bundle: AttemptBundle

class SubmitIn(BaseModel):
  answers: List[AnswerIn]
  duration_sec: Optional[int] = Field(default=None, ge=0)

class SubmitOut(BaseModel):
  score: float
  correct_count: int
  total: int
  attempt: AttemptOut

class AnswerRecordOut(BaseModel):
  model_config = ConfigDict(from_attributes=True)
  position: int
  question_id: Optional[str] = None
  question_version_id: Optional[str] = None
  selected_option_id: Optional[str] = None
  is_correct: bool
  result: AnswerResult

def _attempt_out(a: Attempt) -> AttemptOut:
  bundle = AttemptBundle.model_validate(a.bundle)
  if a.submitted_at is None:
    # keep the answer key hidden until the attempt is graded
    for q in bundle.questions:
      q.options = [SnapshotOption(id=o.id, text=o.text) for o in q.options]
  return AttemptOut(id=a.id, owner_id=a.owner_id, exam_id=a.exam_id, state=a.state, started_at=a.started_at,
                    submitted_at=a.submitted_at, duration_sec=a.duration_sec, score=a.score, bundle=bundle)

@router.post("", response_model=StartAttemptOut, status_code=201)
def post_start_attempt(payload: StartAttemptIn, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
  if payload.bundle is not None and payload.question_ids:
    raise InvalidInputError("Send either bundle or question_ids, not both")
  if payload.bundle is not None:
    bundle = payload.bundle
  elif payload.question_ids:
    bundle = assemble_bundle(db, payload.question_ids, reveal_key=get_settings().REVEAL_KEY_IN_BUNDLE)
  else:
    raise InvalidInputError("A bundle or question_ids is required")
  attempt = start_attempt(db, user.sub, payload.exam_id, bundle)
  return StartAttemptOut(attempt_id=attempt.id, started_at=attempt.started_at)

@router.post("/{attempt_id}/submit", response_model=SubmitOut)
def post_submit_attempt(attempt_id: str, payload: SubmitIn, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
  res = submit_attempt(db, attempt_id, user.sub, payload.answers, duration_sec=payload.duration_sec)
  return SubmitOut(score=res.score, correct_count=res.correct_count, total=res.total, attempt=_attempt_out(res.attempt))

@router.get("/{attempt_id}", response_model=AttemptOut)
def get_attempt_by_id(attempt_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
  attempt = get_attempt(db, attempt_id, user.sub)
  if attempt is None: raise HTTPException(404, "Attempt not found")
  return _attempt_out(attempt)

@router.get("/{attempt_id}/answers", response_model=List[AnswerRecordOut])
def get_attempt_answers(attempt_id: str, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
  rows = list_answers(db, attempt_id, user.sub)
  if rows is None: raise HTTPException(404, "Attempt not found")
  return [AnswerRecordOut.model_validate(r) for r in rows]
