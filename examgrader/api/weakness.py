from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from typing import List, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from examgrader.core.auth import get_current_user, TokenData
from examgrader.core.database import get_db
from examgrader.models.schemas import WeaknessMeta
from examgrader.services.weakness import list_weaknesses

router = APIRouter()

class WeaknessOut(BaseModel):
  model_config = ConfigDict(from_attributes=True)
  exam_id: str
  topic_id: str
  weight: float
  meta: WeaknessMeta
  updated_at: datetime

@router.get("", response_model=List[WeaknessOut])
def get_weaknesses(exam_id: Optional[str] = None, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
  return [WeaknessOut.model_validate(w) for w in list_weaknesses(db, user.sub, exam_id)]
