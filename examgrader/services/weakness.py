"""
Per-topic weakness weights.

Each (owner, exam, topic) keeps one scalar in [0, 1], higher meaning weaker,
folded from every graded attempt with an exponential moving average:

    errorRate = 1 - correct / total
    weight    = errorRate                               (first sample)
    weight    = weight * (1 - alpha) + errorRate * alpha (afterwards)

History is never re-scanned; the row carries everything the next fold needs.
"""
import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from examgrader.core.config import get_settings
from examgrader.models.orm import WeaknessWeight, utcnow
from examgrader.models.schemas import TopicSample, WeaknessMeta

logger = logging.getLogger(__name__)

DEFAULT_ALPHA = 0.4


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))


def error_rate(sample: TopicSample) -> float:
    if sample.total <= 0:
        return 0.0
    return clamp01(1.0 - sample.correct / sample.total)


def fold_weight(existing: Optional[float], err: float, alpha: float = DEFAULT_ALPHA) -> float:
    """Next EMA weight. ``existing`` is None for the first sample of a topic."""
    err = clamp01(err)
    if existing is None:
        return err
    return clamp01(clamp01(existing) * (1.0 - alpha) + err * alpha)


def fold_meta(meta: Optional[WeaknessMeta], sample: TopicSample) -> WeaknessMeta:
    prev = meta or WeaknessMeta()
    wrong = sample.total > 0 and sample.correct < sample.total
    avg = prev.avg_time_ms
    if sample.time_ms is not None:
        # running mean over attempt counts
        avg = sample.time_ms if avg is None else (avg * prev.attempt_count + sample.time_ms) / (prev.attempt_count + 1)
    return WeaknessMeta(
        attempt_count=prev.attempt_count + 1,
        consecutive_wrong=prev.consecutive_wrong + 1 if wrong else 0,
        avg_time_ms=avg,
        last_sample=TopicSample(correct=sample.correct, total=sample.total, time_ms=sample.time_ms),
    )


def apply_topic_stats(db: Session, owner_id: str, exam_id: str, stats: Dict[str, TopicSample],
                      alpha: Optional[float] = None) -> List[WeaknessWeight]:
    """
    Fold one attempt's per-topic samples into the owner's weights.

    Runs inside the caller's transaction and does not commit. Rows are read
    with FOR UPDATE so two attempts of the same owner cannot lose a fold.
    """
    if alpha is None:
        alpha = get_settings().WEAKNESS_ALPHA
    rows = []
    for topic_id in sorted(stats):
        sample = stats[topic_id]
        if sample.total <= 0:
            continue
        err = error_rate(sample)
        row = db.scalar(
            select(WeaknessWeight).where(
                WeaknessWeight.owner_id == owner_id, WeaknessWeight.exam_id == exam_id, WeaknessWeight.topic_id == topic_id
            ).with_for_update()
        )
        if row is None:
            row = WeaknessWeight(owner_id=owner_id, exam_id=exam_id, topic_id=topic_id,
                                 weight=fold_weight(None, err, alpha),
                                 meta=fold_meta(None, sample).model_dump())
            db.add(row)
        else:
            row.weight = fold_weight(row.weight, err, alpha)
            row.meta = fold_meta(WeaknessMeta.model_validate(row.meta or {}), sample).model_dump()
            row.updated_at = utcnow()
        rows.append(row)
        logger.debug("Weakness %s/%s/%s -> %.4f (errorRate %.4f)", owner_id, exam_id, topic_id, row.weight, err)
    db.flush()
    return rows


def list_weaknesses(db: Session, owner_id: str, exam_id: Optional[str] = None) -> List[WeaknessWeight]:
    stmt = select(WeaknessWeight).where(WeaknessWeight.owner_id == owner_id)
    if exam_id is not None:
        stmt = stmt.where(WeaknessWeight.exam_id == exam_id)
    return list(db.scalars(stmt.order_by(WeaknessWeight.weight.desc(), WeaknessWeight.topic_id)).all())
