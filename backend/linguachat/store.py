from __future__ import annotations
import logging
import secrets
import string
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .db import SessionLocal, session_scope
from .errors import (
	AssignmentNotFoundError,
	CharacterNotFoundError,
	CourseNotFoundError,
	StaleSubmissionError,
	SubmissionNotFoundError,
)
from .models import (
	Assignment,
	AuthUser,
	Character,
	CharacterMemory,
	Course,
	CourseEnrollment,
	Submission,
	VocabularyWord,
	utcnow,
)

logger = logging.getLogger(__name__)

SUBMISSION_FIELDS = frozenset({
	"character_id",
	"status",
	"chat_history",
	"current_exchange_count",
	"pos_feedback",
	"neg_feedback",
	"submitted_at",
})

COURSE_CODE_ALPHABET = string.ascii_uppercase + string.digits
COURSE_CODE_LENGTH = 6
COURSE_CODE_ATTEMPTS = 5


def new_course_code() -> str:
	return "".join(secrets.choice(COURSE_CODE_ALPHABET) for _ in range(COURSE_CODE_LENGTH))


class SubmissionStore:
	"""Persistence the conversation session reads and writes through.

	Every method runs in its own short DB session and hands back detached rows.
	"""

	def __init__(self, factory: sessionmaker = SessionLocal) -> None:
		self.factory = factory

	# ---- courses / enrollment ----

	def create_course(self, **fields: Any) -> Course:
		# Join codes are short, so a clash is possible; draw again on the unique violation
		for _ in range(COURSE_CODE_ATTEMPTS):
			try:
				with session_scope(self.factory) as db:
					row = Course(course_code=new_course_code(), **fields)
					db.add(row)
					db.flush()
					return row
			except IntegrityError:
				logger.warning("Course code collision, drawing a new one")
		raise RuntimeError("could not allocate a unique course code")

	def get_course(self, course_id: int) -> Course:
		with session_scope(self.factory) as db:
			row = db.get(Course, course_id)
			if row is None:
				raise CourseNotFoundError(f"course {course_id} not found")
			return row

	def get_course_by_code(self, course_code: str) -> Course:
		with session_scope(self.factory) as db:
			row = db.execute(
				select(Course).where(Course.course_code == course_code.strip().upper())
			).scalar_one_or_none()
			if row is None:
				raise CourseNotFoundError("Invalid join code. Please check with your teacher.")
			return row

	def list_teacher_courses(self, teacher_id: str) -> List[Course]:
		with session_scope(self.factory) as db:
			rows = db.execute(
				select(Course).where(Course.teacher_id == teacher_id).order_by(Course.created_at.desc(), Course.id.desc())
			).scalars().all()
			return list(rows)

	def list_student_courses(self, student_id: str) -> List[Course]:
		with session_scope(self.factory) as db:
			rows = db.execute(
				select(Course)
				.join(CourseEnrollment, CourseEnrollment.course_id == Course.id)
				.where(CourseEnrollment.student_id == student_id)
				.order_by(Course.title)
			).scalars().all()
			return list(rows)

	def enroll(self, course_id: int, student_id: str) -> bool:
		"""Enroll a student; False when they were already in the course."""
		with session_scope(self.factory) as db:
			exists = db.execute(
				select(CourseEnrollment).where(
					CourseEnrollment.course_id == course_id, CourseEnrollment.student_id == student_id
				)
			).scalar_one_or_none()
			if exists is not None:
				return False
			db.add(CourseEnrollment(course_id=course_id, student_id=student_id))
			return True

	def is_enrolled(self, student_id: str, course_id: int) -> bool:
		with session_scope(self.factory) as db:
			row = db.execute(
				select(CourseEnrollment.id).where(
					CourseEnrollment.course_id == course_id, CourseEnrollment.student_id == student_id
				)
			).first()
			return row is not None

	def count_enrollments(self, course_id: int) -> int:
		with session_scope(self.factory) as db:
			return db.execute(
				select(func.count(CourseEnrollment.id)).where(CourseEnrollment.course_id == course_id)
			).scalar_one()

	def list_course_assignments(self, course_id: int) -> List[Assignment]:
		with session_scope(self.factory) as db:
			rows = db.execute(
				select(Assignment)
				.where(Assignment.course_id == course_id)
				.order_by(Assignment.created_at.desc(), Assignment.id.desc())
			).scalars().all()
			return list(rows)

	# ---- assignments / characters ----

	def get_assignment(self, assignment_id: int) -> Assignment:
		with session_scope(self.factory) as db:
			row = db.get(Assignment, assignment_id)
			if row is None:
				raise AssignmentNotFoundError(f"assignment {assignment_id} not found")
			return row

	def create_assignment(self, **fields: Any) -> Assignment:
		with session_scope(self.factory) as db:
			row = Assignment(**fields)
			db.add(row)
			db.flush()
			return row

	def save_assignment_overview(self, assignment_id: int, overview: Dict[str, Any]) -> Assignment:
		with session_scope(self.factory) as db:
			row = db.get(Assignment, assignment_id)
			if row is None:
				raise AssignmentNotFoundError(f"assignment {assignment_id} not found")
			row.assignment_overview = overview
			return row

	def get_character(self, character_id: str, language: str) -> Character:
		with session_scope(self.factory) as db:
			row = db.execute(
				select(Character).where(Character.character_id == character_id, Character.language == language)
			).scalar_one_or_none()
			if row is None:
				raise CharacterNotFoundError(f"character {character_id!r} ({language}) not found")
			return row

	def list_characters(self, language: str) -> List[Character]:
		with session_scope(self.factory) as db:
			rows = db.execute(
				select(Character).where(Character.language == language).order_by(Character.order)
			).scalars().all()
			return list(rows)

	def add_character(self, **fields: Any) -> Character:
		with session_scope(self.factory) as db:
			row = Character(**fields)
			db.add(row)
			db.flush()
			return row

	# ---- submissions ----

	def get_submission(self, student_id: str, assignment_id: int) -> Optional[Submission]:
		with session_scope(self.factory) as db:
			return db.execute(
				select(Submission).where(Submission.student_id == student_id, Submission.assignment_id == assignment_id)
			).scalar_one_or_none()

	def list_submissions(self, assignment_id: int) -> List[Submission]:
		with session_scope(self.factory) as db:
			rows = db.execute(
				select(Submission).where(Submission.assignment_id == assignment_id).order_by(Submission.student_id)
			).scalars().all()
			return list(rows)

	def list_completed_submissions_for_student(self, student_id: str) -> List[Submission]:
		with session_scope(self.factory) as db:
			rows = db.execute(
				select(Submission)
				.where(Submission.student_id == student_id, Submission.submitted_at.is_not(None))
				.order_by(Submission.submitted_at)
			).scalars().all()
			return list(rows)

	def upsert_submission(
		self,
		student_id: str,
		assignment_id: int,
		*,
		expected_version: Optional[int] = None,
		**fields: Any,
	) -> Submission:
		"""Insert or partially update the one submission for (student, assignment).

		Only the given fields are written. When ``expected_version`` is passed and
		the stored row has moved on, nothing is written and
		``StaleSubmissionError`` is raised.
		"""
		unknown = set(fields) - SUBMISSION_FIELDS
		if unknown:
			raise ValueError(f"unknown submission fields: {sorted(unknown)}")
		try:
			with session_scope(self.factory) as db:
				row = db.execute(
					select(Submission).where(Submission.student_id == student_id, Submission.assignment_id == assignment_id)
				).scalar_one_or_none()
				if row is None:
					if expected_version:
						raise StaleSubmissionError(expected_version, 0)
					row = Submission(student_id=student_id, assignment_id=assignment_id, chat_history=[], version=1)
					for key, value in fields.items():
						setattr(row, key, value)
					db.add(row)
				else:
					if expected_version is not None and row.version != expected_version:
						raise StaleSubmissionError(expected_version, row.version)
					for key, value in fields.items():
						setattr(row, key, value)
					row.version = row.version + 1
				db.flush()
				return row
		except StaleSubmissionError:
			raise
		except Exception:
			logger.exception("Failed to write submission for %s / assignment %s", student_id, assignment_id)
			raise

	def reset_submission(self, submission_id: int) -> Submission:
		with session_scope(self.factory) as db:
			row = db.get(Submission, submission_id)
			if row is None:
				raise SubmissionNotFoundError(f"submission {submission_id} not found")
			row.chat_history = []
			row.current_exchange_count = 0
			row.status = "not_started"
			row.pos_feedback = None
			row.neg_feedback = None
			row.submitted_at = None
			row.version = row.version + 1
			return row

	# ---- per-student extras ----

	def get_memory(self, student_id: str, character_id: str) -> List[str]:
		with session_scope(self.factory) as db:
			row = db.execute(
				select(CharacterMemory).where(
					CharacterMemory.student_id == student_id, CharacterMemory.character_id == character_id
				)
			).scalar_one_or_none()
			return list(row.personality_traits or []) if row else []

	def save_memory(self, student_id: str, character_id: str, traits: List[str]) -> None:
		with session_scope(self.factory) as db:
			row = db.execute(
				select(CharacterMemory).where(
					CharacterMemory.student_id == student_id, CharacterMemory.character_id == character_id
				)
			).scalar_one_or_none()
			if row is None:
				db.add(CharacterMemory(student_id=student_id, character_id=character_id, personality_traits=list(traits)))
			else:
				row.personality_traits = list(traits)
				row.updated_at = utcnow()

	def add_vocabulary_word(self, student_id: str, language: str, word: str) -> bool:
		"""Save a word to the student's list; False when it was already there."""
		with session_scope(self.factory) as db:
			exists = db.execute(
				select(VocabularyWord).where(
					VocabularyWord.student_id == student_id,
					VocabularyWord.language == language,
					VocabularyWord.word == word,
				)
			).scalar_one_or_none()
			if exists is not None:
				return False
			db.add(VocabularyWord(student_id=student_id, language=language, word=word))
			return True

	def list_vocabulary(self, student_id: str, language: Optional[str] = None) -> List[str]:
		with session_scope(self.factory) as db:
			query = select(VocabularyWord.word).where(VocabularyWord.student_id == student_id)
			if language:
				query = query.where(VocabularyWord.language == language)
			return list(db.execute(query.order_by(VocabularyWord.created_at, VocabularyWord.id)).scalars().all())

	def get_first_name(self, username: str) -> Optional[str]:
		with session_scope(self.factory) as db:
			row = db.get(AuthUser, username)
			return row.first_name if row else None
