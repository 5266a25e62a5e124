"""
Student-facing assignment chat.

A student picks a character (``/start``), opens the chat (``/chat``, which also
produces the one-time greeting), trades messages until the required number of
exchanges is reached, then finishes (``/chat/finalize``) to get feedback.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..conversation import SessionRegistry, SessionState
from ..deps import get_registry, get_store
from ..errors import StaleSubmissionError, SubmissionNotFoundError, UnauthorizedError
from ..json_output import coerce_feedback_list
from ..models import Assignment
from ..store import SubmissionStore
from .auth import User, get_current_student


router = APIRouter(prefix="/assignments", tags=["assignments"])


class AssignmentOut(BaseModel):
	id: int
	course_id: int
	title: str
	topic: str
	scenario: str
	language: str
	level: str
	difficulty: str
	grammar: Optional[str] = None
	vocabulary: Optional[str] = None
	exchanges: int
	start_at: datetime
	due_at: Optional[datetime] = None

	model_config = {"from_attributes": True}


class CharacterOut(BaseModel):
	character_id: str
	public_char_desc: Optional[str] = None
	order: int

	model_config = {"from_attributes": True}


class StartRequest(BaseModel):
	character_id: str = Field(min_length=1)


class MessageRequest(BaseModel):
	text: str


class MessageResponse(BaseModel):
	reply: str
	session: Dict[str, Any]


class FinalizeResponse(BaseModel):
	strengths: List[str]
	improvements: List[str]
	session: Dict[str, Any]


async def _session_for(registry: SessionRegistry, user: User, assignment_id: int):
	# Sessions are keyed by the caller, so a student only ever reaches their own submission
	return await registry.open(user.username, assignment_id)


def enrolled_assignment(store: SubmissionStore, user: User, assignment_id: int) -> Assignment:
	assignment = store.get_assignment(assignment_id)
	if not store.is_enrolled(user.username, assignment.course_id):
		raise UnauthorizedError("You are not enrolled in this course")
	return assignment


@router.get("/{assignment_id}")
async def get_assignment(
	assignment_id: int,
	user: User = Depends(get_current_student),
	store: SubmissionStore = Depends(get_store),
):
	assignment = enrolled_assignment(store, user, assignment_id)
	sub = store.get_submission(user.username, assignment_id)
	return {
		"assignment": AssignmentOut.model_validate(assignment),
		"submission": None if sub is None else {
			"status": sub.status,
			"character_id": sub.character_id,
			"current_exchange_count": sub.current_exchange_count,
		},
	}


@router.get("/{assignment_id}/characters", response_model=List[CharacterOut])
async def list_characters(
	assignment_id: int,
	user: User = Depends(get_current_student),
	store: SubmissionStore = Depends(get_store),
):
	assignment = enrolled_assignment(store, user, assignment_id)
	return [CharacterOut.model_validate(c) for c in store.list_characters(assignment.language)]


@router.post("/{assignment_id}/start")
async def start_assignment(
	assignment_id: int,
	req: StartRequest,
	user: User = Depends(get_current_student),
	registry: SessionRegistry = Depends(get_registry),
):
	session = await _session_for(registry, user, assignment_id)
	await session.start(req.character_id)
	return session.snapshot()


@router.post("/{assignment_id}/chat")
async def open_chat(
	assignment_id: int,
	user: User = Depends(get_current_student),
	registry: SessionRegistry = Depends(get_registry),
):
	session = await _session_for(registry, user, assignment_id)
	if session.state == SessionState.UNINITIALIZED:
		raise SubmissionNotFoundError("Pick a character and start the assignment first")
	if session.state == SessionState.GREETING:
		await session.greet()
	return session.snapshot()


@router.post("/{assignment_id}/chat/messages", response_model=MessageResponse)
async def send_message(
	assignment_id: int,
	req: MessageRequest,
	user: User = Depends(get_current_student),
	registry: SessionRegistry = Depends(get_registry),
):
	session = await _session_for(registry, user, assignment_id)
	try:
		reply = await session.submit_turn(req.text)
	except StaleSubmissionError:
		# Another tab moved the submission on; reload on the next request
		registry.discard(user.username, assignment_id)
		raise
	return MessageResponse(reply=reply, session=session.snapshot())


@router.post("/{assignment_id}/chat/finalize", response_model=FinalizeResponse)
async def finalize_chat(
	assignment_id: int,
	user: User = Depends(get_current_student),
	registry: SessionRegistry = Depends(get_registry),
):
	session = await _session_for(registry, user, assignment_id)
	try:
		summary = await session.finalize()
	except StaleSubmissionError:
		registry.discard(user.username, assignment_id)
		raise
	return FinalizeResponse(strengths=summary.strengths, improvements=summary.improvements, session=session.snapshot())


@router.post("/{assignment_id}/restart")
async def restart_assignment(
	assignment_id: int,
	user: User = Depends(get_current_student),
	registry: SessionRegistry = Depends(get_registry),
):
	session = await _session_for(registry, user, assignment_id)
	await session.restart()
	snapshot = session.snapshot()
	registry.discard(user.username, assignment_id)
	return snapshot


@router.get("/{assignment_id}/results")
async def results(
	assignment_id: int,
	user: User = Depends(get_current_student),
	store: SubmissionStore = Depends(get_store),
):
	assignment = enrolled_assignment(store, user, assignment_id)
	sub = store.get_submission(user.username, assignment_id)
	if sub is None:
		raise SubmissionNotFoundError("No submission for this assignment yet")
	return {
		"assignment": AssignmentOut.model_validate(assignment),
		"character_id": sub.character_id,
		"status": sub.status,
		"chat_history": sub.chat_history or [],
		"current_exchange_count": sub.current_exchange_count,
		"pos_feedback": coerce_feedback_list(sub.pos_feedback),
		"neg_feedback": coerce_feedback_list(sub.neg_feedback),
		"submitted_at": sub.submitted_at,
	}
