from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from ..deps import get_store, get_tutor
from ..errors import TurnRejectedError, UnauthorizedError
from ..json_output import coerce_feedback_list
from ..models import Assignment, Course, utcnow
from ..store import SubmissionStore
from ..tutor import Tutor
from .assignments import AssignmentOut, CharacterOut
from .courses import CourseOut
from .auth import User, get_current_teacher


router = APIRouter(prefix="/teacher", tags=["teacher"])

DIFFICULTIES = ("Standard", "Challenging")


class CreateCourseRequest(BaseModel):
	title: str = Field(min_length=1)
	description: Optional[str] = None
	language: str = Field(min_length=1)
	level: str = Field(min_length=1)


class CreateAssignmentRequest(BaseModel):
	course_id: int
	title: str = Field(min_length=1)
	topic: str = Field(min_length=1)
	scenario: str = Field(min_length=1)
	# Default to the course's language and level
	language: Optional[str] = None
	level: Optional[str] = None
	difficulty: str = "Standard"
	grammar: Optional[str] = None
	vocabulary: Optional[str] = None
	exchanges: int = Field(gt=0)
	start_at: Optional[datetime] = None
	due_at: Optional[datetime] = None

	@field_validator("difficulty")
	@classmethod
	def _check_difficulty(cls, value: str) -> str:
		if value not in DIFFICULTIES:
			raise ValueError(f"difficulty must be one of {list(DIFFICULTIES)}")
		return value

	@field_validator("start_at", "due_at")
	@classmethod
	def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
		# Stored as naive UTC
		if value is not None and value.tzinfo is not None:
			value = value.astimezone(timezone.utc).replace(tzinfo=None)
		return value


class CreateCharacterRequest(BaseModel):
	character_id: str = Field(min_length=1)
	language: str = Field(min_length=1)
	character_description: str = ""
	public_char_desc: Optional[str] = None
	order: int = 1


def _owned_assignment(store: SubmissionStore, user: User, assignment_id: int) -> Assignment:
	assignment = store.get_assignment(assignment_id)
	if assignment.teacher_id != user.username:
		raise UnauthorizedError("This assignment belongs to another teacher")
	return assignment


def _owned_course(store: SubmissionStore, user: User, course_id: int) -> Course:
	course = store.get_course(course_id)
	if course.teacher_id != user.username:
		raise UnauthorizedError("This course belongs to another teacher")
	return course


@router.post("/courses", response_model=CourseOut, status_code=201)
async def create_course(
	req: CreateCourseRequest,
	user: User = Depends(get_current_teacher),
	store: SubmissionStore = Depends(get_store),
):
	return CourseOut.model_validate(store.create_course(teacher_id=user.username, **req.model_dump()))


@router.get("/courses", response_model=List[CourseOut])
async def list_courses(user: User = Depends(get_current_teacher), store: SubmissionStore = Depends(get_store)):
	return [CourseOut.model_validate(c) for c in store.list_teacher_courses(user.username)]


@router.get("/courses/{course_id}")
async def course_detail(
	course_id: int,
	user: User = Depends(get_current_teacher),
	store: SubmissionStore = Depends(get_store),
):
	course = _owned_course(store, user, course_id)
	return {
		"course": CourseOut.model_validate(course),
		"student_count": store.count_enrollments(course_id),
		"assignments": [AssignmentOut.model_validate(a) for a in store.list_course_assignments(course_id)],
	}


@router.post("/assignments", response_model=AssignmentOut, status_code=201)
async def create_assignment(
	req: CreateAssignmentRequest,
	user: User = Depends(get_current_teacher),
	store: SubmissionStore = Depends(get_store),
):
	course = _owned_course(store, user, req.course_id)
	fields = req.model_dump()
	fields["start_at"] = fields["start_at"] or utcnow()
	fields["language"] = fields["language"] or course.language
	fields["level"] = fields["level"] or course.level
	row = store.create_assignment(teacher_id=user.username, **fields)
	return AssignmentOut.model_validate(row)


@router.post("/characters", response_model=CharacterOut, status_code=201)
async def create_character(
	req: CreateCharacterRequest,
	user: User = Depends(get_current_teacher),
	store: SubmissionStore = Depends(get_store),
):
	return CharacterOut.model_validate(store.add_character(**req.model_dump()))


@router.get("/assignments/{assignment_id}/submissions")
async def list_submissions(
	assignment_id: int,
	user: User = Depends(get_current_teacher),
	store: SubmissionStore = Depends(get_store),
):
	assignment = _owned_assignment(store, user, assignment_id)
	return {
		"assignment": AssignmentOut.model_validate(assignment),
		"assignment_overview": assignment.assignment_overview,
		"submissions": [
			{
				"student_id": s.student_id,
				"character_id": s.character_id,
				"status": s.status,
				"current_exchange_count": s.current_exchange_count,
				"chat_history": s.chat_history or [],
				"pos_feedback": coerce_feedback_list(s.pos_feedback),
				"neg_feedback": coerce_feedback_list(s.neg_feedback),
				"submitted_at": s.submitted_at,
			}
			for s in store.list_submissions(assignment_id)
		],
	}


@router.post("/assignments/{assignment_id}/overview")
async def generate_assignment_overview(
	assignment_id: int,
	user: User = Depends(get_current_teacher),
	store: SubmissionStore = Depends(get_store),
	tutor: Tutor = Depends(get_tutor),
):
	"""Common strengths / weaknesses across every finished submission; saved on the assignment."""
	_owned_assignment(store, user, assignment_id)
	feedback: List[Dict[str, Any]] = [
		{"pos": coerce_feedback_list(s.pos_feedback), "neg": coerce_feedback_list(s.neg_feedback)}
		for s in store.list_submissions(assignment_id)
		if s.submitted_at is not None
	]
	if not feedback:
		raise TurnRejectedError("No completed submissions to analyze.")
	overview = await tutor.assignment_overview(feedback)
	saved = {**overview.model_dump(), "generated_at": utcnow().isoformat()}
	store.save_assignment_overview(assignment_id, saved)
	return saved


@router.post("/students/{student_id}/overview")
async def generate_student_overview(
	student_id: str,
	user: User = Depends(get_current_teacher),
	store: SubmissionStore = Depends(get_store),
	tutor: Tutor = Depends(get_tutor),
):
	"""High-level strengths / areas for growth for one student across this teacher's assignments."""
	feedback: List[Dict[str, Any]] = []
	for s in store.list_completed_submissions_for_student(student_id):
		assignment = store.get_assignment(s.assignment_id)
		if assignment.teacher_id != user.username:
			continue
		feedback.append({
			"assignment": assignment.title,
			"pos": coerce_feedback_list(s.pos_feedback),
			"neg": coerce_feedback_list(s.neg_feedback),
		})
	if not feedback:
		raise TurnRejectedError("This student has no completed assignments yet.")
	overview = await tutor.student_overview(feedback)
	return overview.model_dump()
