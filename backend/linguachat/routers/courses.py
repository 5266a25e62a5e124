from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..conversation import lock_reason
from ..deps import get_store
from ..errors import UnauthorizedError
from ..models import utcnow
from ..store import SubmissionStore
from .assignments import AssignmentOut
from .auth import User, get_current_student


router = APIRouter(prefix="/courses", tags=["courses"])


class CourseOut(BaseModel):
	id: int
	title: str
	description: Optional[str] = None
	language: str
	level: str
	course_code: str

	model_config = {"from_attributes": True}


class JoinRequest(BaseModel):
	join_code: str = Field(min_length=1)


class CourseAssignment(BaseModel):
	assignment: AssignmentOut
	status: str
	current_exchange_count: int
	locked: bool
	lock_reason: Optional[str] = None
	submitted_at: Optional[datetime] = None


@router.get("", response_model=List[CourseOut])
async def my_courses(user: User = Depends(get_current_student), store: SubmissionStore = Depends(get_store)):
	return [CourseOut.model_validate(c) for c in store.list_student_courses(user.username)]


@router.post("/join", response_model=CourseOut, status_code=201)
async def join_course(req: JoinRequest, user: User = Depends(get_current_student), store: SubmissionStore = Depends(get_store)):
	course = store.get_course_by_code(req.join_code)
	if not store.enroll(course.id, user.username):
		raise HTTPException(status_code=409, detail="You are already enrolled in this course!")
	return CourseOut.model_validate(course)


@router.get("/{course_id}/assignments", response_model=List[CourseAssignment])
async def course_assignments(
	course_id: int,
	user: User = Depends(get_current_student),
	store: SubmissionStore = Depends(get_store),
):
	store.get_course(course_id)
	if not store.is_enrolled(user.username, course_id):
		raise UnauthorizedError("You are not enrolled in this course")
	now = utcnow()
	items: List[CourseAssignment] = []
	for a in store.list_course_assignments(course_id):
		sub = store.get_submission(user.username, a.id)
		reason = lock_reason(a, now)
		items.append(CourseAssignment(
			assignment=AssignmentOut.model_validate(a),
			status=sub.status if sub else "not_started",
			current_exchange_count=sub.current_exchange_count if sub else 0,
			locked=reason is not None,
			lock_reason=reason,
			submitted_at=sub.submitted_at if sub else None,
		))
	return items
