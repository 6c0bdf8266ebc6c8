"""
Typed shapes for the JSON payloads stored alongside the ORM rows.

Bundles, answer results and weakness metadata are validated here, at the
boundary, so the grading code can rely on their structure.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, model_validator


class SnapshotOption(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: Optional[str] = None
    text: str = ""
    is_correct: Optional[bool] = None


class BundleQuestion(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    question_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    topic_id: Optional[str] = None
    text: str = ""
    options: List[SnapshotOption] = Field(min_length=2)

    @model_validator(mode="after")
    def _needs_a_key(self):
        if not self.question_id and not self.snapshot_id:
            raise ValueError("bundle question needs a question_id or snapshot_id")
        return self

    @property
    def has_key(self) -> bool:
        return any(o.is_correct is not None for o in self.options)


class AttemptBundle(BaseModel):
    questions: List[BundleQuestion] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_questions(self):
        seen = set()
        for q in self.questions:
            if q.question_id is None:
                continue
            if q.question_id in seen:
                raise ValueError(f"duplicate question_id in bundle: {q.question_id}")
            seen.add(q.question_id)
        return self


class AnswerIn(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    question_id: Optional[str] = None
    question_version_id: Optional[str] = None
    selected_option_id: Optional[str] = None
    selected_text: Optional[str] = None
    time_taken_ms: Optional[int] = Field(default=None, ge=0)


class AnswerResult(BaseModel):
    selected_text: Optional[str] = None
    correct_option_id: Optional[str] = None
    correct_option_text: Optional[str] = None
    matched_by: Literal["option_id", "text", "none"] = "none"
    unmatched: bool = True


class TopicSample(BaseModel):
    correct: int = 0
    total: int = 0
    time_ms: Optional[float] = None


class WeaknessMeta(BaseModel):
    attempt_count: int = 0
    consecutive_wrong: int = 0
    avg_time_ms: Optional[float] = None
    last_sample: Optional[TopicSample] = None
