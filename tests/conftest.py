"""
Pytest configuration and shared fixtures
"""

import os
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

# Test environment must be in place before linguachat reads its settings
os.environ.update({
	"GEMINI_API_KEY": "test-key",
	"DATABASE_URL": "sqlite://",
	"JWT_SECRET_KEY": "test-secret",
	"GEMINI_MAX_ATTEMPTS": "3",
	"GEMINI_RETRY_DELAY_SECONDS": "0",
})

from linguachat.conversation import ConversationSession
from linguachat.db import Base, engine, session_scope
from linguachat.json_output import FeedbackSummary
from linguachat.models import AuthUser
from linguachat.store import SubmissionStore
from linguachat.tutor import SendMessage, StartGreeting, Tutor


GREETING = "¡Hola Sam! Bienvenido a mi café. ¿Qué quieres tomar?"

SUMMARY = FeedbackSummary(
	strengths=["Ordered politely", "Good use of quiero", "Asked follow-up questions"],
	improvements=["Mixes ser and estar", "Forgets accents", "Short answers"],
	personality_traits=["Curious", "Likes coffee", "Jokes a lot"],
)


class FakeClock:
	def __init__(self, now: datetime) -> None:
		self.now = now

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> None:
		self.now = self.now + timedelta(**kwargs)


def fake_reply(request, context, history=()):
	if isinstance(request, StartGreeting):
		return GREETING
	if isinstance(request, SendMessage):
		return f"Respuesta a: {request.text}"
	return SUMMARY


# ============================================
# Database
# ============================================

@pytest.fixture(autouse=True)
def tables():
	Base.metadata.create_all(bind=engine)
	yield
	Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store():
	return SubmissionStore()


@pytest.fixture
def clock():
	return FakeClock(datetime(2026, 3, 2, 10, 0))


@pytest.fixture
def student(store):
	with session_scope() as db:
		db.add(AuthUser(username="sam", password_hash="x", role="student", first_name="Sam"))
	return "sam"


@pytest.fixture
def character(store):
	return store.add_character(
		character_id="Lucia",
		language="Spanish",
		character_description="A cheerful barista from Seville who loves football",
		public_char_desc="Barista in Seville",
		order=1,
	)


@pytest.fixture
def course(store):
	return store.create_course(
		teacher_id="ms_garcia",
		title="Spanish 1",
		language="Spanish",
		level="Beginner (Year 1)",
	)


@pytest.fixture
def enrolled(store, course, student):
	store.enroll(course.id, student)
	return student


@pytest.fixture
def assignment(store, clock, course):
	return store.create_assignment(
		course_id=course.id,
		teacher_id="ms_garcia",
		title="At the café",
		topic="Ordering food",
		scenario="You are ordering breakfast at a busy café in Seville",
		language="Spanish",
		level="Beginner (Year 1)",
		difficulty="Standard",
		vocabulary="tostada, zumo",
		exchanges=5,
		start_at=clock.now - timedelta(days=1),
		due_at=clock.now + timedelta(days=7),
	)


# ============================================
# Tutor / session
# ============================================

@pytest.fixture
def tutor():
	fake = AsyncMock(spec=Tutor)
	fake.respond.side_effect = fake_reply
	return fake


@pytest.fixture
def make_session(store, tutor, clock, assignment, enrolled, character):
	def _make(student_id: str = "sam", assignment_id: int = None) -> ConversationSession:
		return ConversationSession(
			store,
			tutor,
			student_id=student_id,
			assignment_id=assignment_id or assignment.id,
			clock=clock,
		)
	return _make


@pytest.fixture
def session(make_session):
	return make_session()
