from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Integer, Text, JSON, UniqueConstraint
from .db import Base


def utcnow() -> datetime:
	# Naive UTC, which is what SQLite hands back
	return datetime.now(timezone.utc).replace(tzinfo=None)


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username; it doubles as student_id / teacher_id
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	role = Column(String(16), default="student", nullable=False)
	first_name = Column(String(128), nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=utcnow, nullable=False)


class Character(Base):
	__tablename__ = "characters"
	__table_args__ = (UniqueConstraint("character_id", "language", name="uq_character_language"),)
	id = Column(Integer, primary_key=True, autoincrement=True)
	character_id = Column(String(128), nullable=False)
	language = Column(String(64), nullable=False, index=True)
	# Private description goes into the system instruction; public one is shown to students
	character_description = Column(Text, nullable=False, default="")
	public_char_desc = Column(Text, nullable=True)
	order = Column(Integer, default=1, nullable=False)


class Course(Base):
	__tablename__ = "courses"
	id = Column(Integer, primary_key=True, autoincrement=True)
	teacher_id = Column(String(128), nullable=False, index=True)
	title = Column(String(256), nullable=False)
	description = Column(Text, nullable=True)
	# Default language and level for the course's assignments
	language = Column(String(64), nullable=False)
	level = Column(String(64), nullable=False)
	# Code students type in to join
	course_code = Column(String(16), unique=True, nullable=False, index=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class CourseEnrollment(Base):
	__tablename__ = "course_enrollments"
	__table_args__ = (UniqueConstraint("course_id", "student_id", name="uq_enrollment_course_student"),)
	id = Column(Integer, primary_key=True, autoincrement=True)
	course_id = Column(Integer, nullable=False, index=True)
	student_id = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class Assignment(Base):
	__tablename__ = "assignments"
	id = Column(Integer, primary_key=True, autoincrement=True)
	course_id = Column(Integer, nullable=False, index=True)
	teacher_id = Column(String(128), nullable=False, index=True)
	title = Column(String(256), nullable=False)
	topic = Column(String(256), nullable=False)
	scenario = Column(Text, nullable=False)
	language = Column(String(64), nullable=False)
	level = Column(String(64), nullable=False)
	difficulty = Column(String(16), default="Standard", nullable=False)  # Standard | Challenging
	grammar = Column(Text, nullable=True)
	vocabulary = Column(Text, nullable=True)
	exchanges = Column(Integer, nullable=False)
	start_at = Column(DateTime, default=utcnow, nullable=False)
	due_at = Column(DateTime, nullable=True)
	assignment_overview = Column(JSON, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class Submission(Base):
	__tablename__ = "submissions"
	__table_args__ = (UniqueConstraint("student_id", "assignment_id", name="uq_submission_student_assignment"),)
	id = Column(Integer, primary_key=True, autoincrement=True)
	student_id = Column(String(128), nullable=False, index=True)
	assignment_id = Column(Integer, nullable=False, index=True)
	character_id = Column(String(128), nullable=True)
	status = Column(String(16), default="not_started", nullable=False)
	chat_history = Column(JSON, default=list, nullable=False)
	current_exchange_count = Column(Integer, default=0, nullable=False)
	pos_feedback = Column(JSON, nullable=True)
	neg_feedback = Column(JSON, nullable=True)
	submitted_at = Column(DateTime, nullable=True)
	# Bumped on every write; stale writers get rejected
	version = Column(Integer, default=1, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CharacterMemory(Base):
	__tablename__ = "character_memories"
	__table_args__ = (UniqueConstraint("student_id", "character_id", name="uq_memory_student_character"),)
	id = Column(Integer, primary_key=True, autoincrement=True)
	student_id = Column(String(128), nullable=False, index=True)
	character_id = Column(String(128), nullable=False)
	personality_traits = Column(JSON, nullable=False, default=list)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class VocabularyWord(Base):
	__tablename__ = "vocabulary_words"
	__table_args__ = (UniqueConstraint("student_id", "language", "word", name="uq_vocab_student_word"),)
	id = Column(Integer, primary_key=True, autoincrement=True)
	student_id = Column(String(128), nullable=False, index=True)
	language = Column(String(64), nullable=False)
	word = Column(String(256), nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
