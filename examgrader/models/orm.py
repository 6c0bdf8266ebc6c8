from datetime import datetime, timezone
from uuid import uuid4
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import Integer, String, Text, Boolean, ForeignKey, JSON, Float, DateTime, UniqueConstraint, Index

def _uuid() -> str: return str(uuid4())
def utcnow() -> datetime: return datetime.now(timezone.utc)

class Base(DeclarativeBase): pass

# Live content. Stands in for the external question store; grading never reads it directly.
class LiveQuestion(Base):
    __tablename__ = "live_questions"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    topic_id: Mapped[str | None] = mapped_column(String, nullable=True)
    text: Mapped[str] = mapped_column(Text)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

class LiveOption(Base):
    __tablename__ = "live_options"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    question_id: Mapped[str] = mapped_column(String, ForeignKey("live_questions.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    text: Mapped[str] = mapped_column(Text)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)

class QuestionSnapshot(Base):
    __tablename__ = "question_snapshots"
    __table_args__ = (UniqueConstraint("question_id", "version", name="uq_snapshot_question_version"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    question_id: Mapped[str] = mapped_column(String, index=True)
    version: Mapped[int] = mapped_column(Integer)
    topic_id: Mapped[str | None] = mapped_column(String, nullable=True)
    text: Mapped[str] = mapped_column(Text)
    options: Mapped[list] = mapped_column(JSON)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_hash: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class Attempt(Base):
    __tablename__ = "attempts"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    exam_id: Mapped[str] = mapped_column(String, index=True)
    bundle: Mapped[dict] = mapped_column(JSON)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)

    @property
    def state(self) -> str:
        return "open" if self.submitted_at is None else "graded"

class AnswerRecord(Base):
    __tablename__ = "answer_records"
    __table_args__ = (UniqueConstraint("attempt_id", "position", name="uq_answer_attempt_position"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    attempt_id: Mapped[str] = mapped_column(String, ForeignKey("attempts.id"), index=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    position: Mapped[int] = mapped_column(Integer)
    question_id: Mapped[str | None] = mapped_column(String, nullable=True)
    question_version_id: Mapped[str | None] = mapped_column(String, nullable=True)
    selected_option_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_correct: Mapped[bool] = mapped_column(Boolean)
    result: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class WeaknessWeight(Base):
    __tablename__ = "weakness_weights"
    __table_args__ = (
        UniqueConstraint("owner_id", "exam_id", "topic_id", name="uq_weakness_owner_exam_topic"),
        Index("ix_weakness_owner_exam", "owner_id", "exam_id"),
    )
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String)
    exam_id: Mapped[str] = mapped_column(String)
    topic_id: Mapped[str] = mapped_column(String)
    weight: Mapped[float] = mapped_column(Float)
    meta: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
