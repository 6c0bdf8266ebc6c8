from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from examgrader.core.auth import get_current_user
from examgrader.core.database import get_db
from examgrader.models.orm import QuestionSnapshot
from examgrader.models.schemas import SnapshotOption
from examgrader.services.versioning import get_snapshot_version, latest_snapshot, list_snapshots, revise_question, snapshot_options

router = APIRouter(dependencies=[Depends(get_current_user)])

class PublicOption(BaseModel):
  id: Optional[str] = None
  text: str

class SnapshotOut(BaseModel):
  id: str
  question_id: str
  version: int
  topic_id: Optional[str] = None
  text: str
  options: List[PublicOption]
  content_hash: str
  created_at: datetime

class RevisionIn(BaseModel):
  text: Optional[str] = None
  options: Optional[List[SnapshotOption]] = Field(default=None, min_length=2)
  explanation: Optional[str] = None

def _snapshot_out(s: QuestionSnapshot) -> SnapshotOut:
  # snapshots are not attempt-scoped, so the key never leaves through these routes
  return SnapshotOut(id=s.id, question_id=s.question_id, version=s.version, topic_id=s.topic_id, text=s.text,
                     options=[PublicOption(id=o.id, text=o.text) for o in snapshot_options(s)],
                     content_hash=s.content_hash, created_at=s.created_at)

@router.get("/{question_id}/snapshots", response_model=List[SnapshotOut])
def get_snapshots(question_id: str, db: Session = Depends(get_db)):
  return [_snapshot_out(s) for s in list_snapshots(db, question_id)]

@router.get("/{question_id}/snapshots/latest", response_model=SnapshotOut)
def get_latest_snapshot(question_id: str, db: Session = Depends(get_db)):
  snap = latest_snapshot(db, question_id)
  if snap is None: raise HTTPException(404, "No snapshot for question")
  return _snapshot_out(snap)

@router.get("/{question_id}/snapshots/{version}", response_model=SnapshotOut)
def get_snapshot_by_version(question_id: str, version: int, db: Session = Depends(get_db)):
  snap = get_snapshot_version(db, question_id, version)
  if snap is None: raise HTTPException(404, "Snapshot not found")
  return _snapshot_out(snap)

@router.post("/{question_id}/revisions", response_model=SnapshotOut, status_code=201)
def post_revision(question_id: str, payload: RevisionIn, db: Session = Depends(get_db)):
  snap = revise_question(db, question_id, text=payload.text, options=payload.options, explanation=payload.explanation)
  return _snapshot_out(snap)
