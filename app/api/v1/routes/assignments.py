import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.api.v1.dependencies import get_assignment_service
from app.core.database import get_db
from app.core.exceptions import AssignmentLimitReached, StoreUnavailable
from app.core.middleware import get_current_user
from app.services.assignment_service import AssignmentService

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateAssignmentRequest(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    subject: Optional[str] = None
    assignment_type: Optional[str] = None
    academic_level: Optional[str] = None
    requirements: Optional[str] = None
    due_date: Optional[datetime] = None


def _serialize(assignment) -> dict:
    return {
        "id": assignment.id,
        "title": assignment.title,
        "subject": assignment.subject,
        "assignment_type": assignment.assignment_type,
        "academic_level": assignment.academic_level,
        "status": assignment.status,
        "word_count": assignment.word_count,
        "due_date": assignment.due_date.isoformat() if assignment.due_date else None,
        "created_at": assignment.created_at.isoformat() if assignment.created_at else None,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_assignment(
    request: CreateAssignmentRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    assignment_service: AssignmentService = Depends(get_assignment_service)
):
    """
    Save a generated assignment and count it against the user's plan.
    Returns 402 once the free-plan cap is reached.
    """
    user_id = current_user['uid']
    logger.info(f"create_assignment: Entry - user: {user_id}")

    try:
        assignment = assignment_service.create_assignment(
            db=db,
            user_id=user_id,
            title=request.title,
            content=request.content,
            subject=request.subject,
            assignment_type=request.assignment_type,
            academic_level=request.academic_level,
            requirements=request.requirements,
            due_date=request.due_date,
        )
        result = _serialize(assignment)
        result["content"] = assignment.content
        return result
    except AssignmentLimitReached as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "You have used all assignments included in the Free plan. Upgrade to Basic or Pro for unlimited assignments.",
                "used": e.used,
                "limit": e.limit,
                "upgrade_url": "/upgrade",
            }
        )
    except StoreUnavailable:
        # Fail closed: no assignment without a confirmed allowance
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cannot verify your plan right now. Please try again shortly."
        )
    except Exception as e:
        logger.error(f"create_assignment: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("")
async def list_assignments(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
    assignment_service: AssignmentService = Depends(get_assignment_service)
):
    user_id = current_user['uid']
    assignments = assignment_service.list_assignments(db, user_id, limit=limit)
    return {"assignments": [_serialize(a) for a in assignments]}
