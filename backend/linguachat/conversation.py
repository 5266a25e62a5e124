"""
Assignment conversation lifecycle
=================================

One ``ConversationSession`` drives one student's chat with an AI character for
one assignment:

    UNINITIALIZED -> GREETING -> AWAITING_INPUT <-> PROCESSING_TURN
                  -> AWAITING_FINALIZATION -> FINALIZED

``LOCKED`` is entered whenever "now" falls outside the assignment's start/due
window; nothing is erased, but no turns are accepted.

All guards (greeting at most once, one turn in flight) are plain fields on the
session, so each live session is independent. They are local to this process:
two processes racing on the same submission are caught by the submission
``version`` instead.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import SubmissionNotFoundError, TurnRejectedError, UnauthorizedError, CharacterNotFoundError
from .json_output import FeedbackSummary, coerce_feedback_list
from .models import Assignment, Submission, utcnow
from .prompts import ChatContext
from .store import SubmissionStore
from .tutor import RequestSummary, SendMessage, StartGreeting, Tutor

logger = logging.getLogger(__name__)

Turn = Dict[str, str]


class SessionState(str, enum.Enum):
	UNINITIALIZED = "uninitialized"
	GREETING = "greeting"
	AWAITING_INPUT = "awaiting_input"
	PROCESSING_TURN = "processing_turn"
	AWAITING_FINALIZATION = "awaiting_finalization"
	FINALIZED = "finalized"
	LOCKED = "locked"


def lock_reason(assignment: Assignment, now: datetime) -> Optional[str]:
	"""Human-readable reason the assignment is closed at ``now``, or None if open."""
	if now < assignment.start_at:
		return f"Opens {assignment.start_at:%Y-%m-%d %H:%M} UTC"
	if assignment.due_at is not None and now > assignment.due_at:
		return "Closed (Due date passed)."
	return None


class ConversationSession:
	def __init__(
		self,
		store: SubmissionStore,
		tutor: Tutor,
		*,
		student_id: str,
		assignment_id: int,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self.store = store
		self.tutor = tutor
		self.student_id = student_id
		self.assignment_id = assignment_id
		self.clock = clock
		self.state = SessionState.UNINITIALIZED
		self.lock_reason: Optional[str] = None
		self.assignment: Optional[Assignment] = None
		self.submission_id: Optional[int] = None
		self.character_id: Optional[str] = None
		self.character_description = ""
		self.student_name: Optional[str] = None
		self.memory: List[str] = []
		self.history: List[Turn] = []
		self.exchange_count = 0
		self.status = "not_started"
		self.pos_feedback: List[str] = []
		self.neg_feedback: List[str] = []
		self.submitted_at: Optional[datetime] = None
		self.version = 0
		self.greeted = False
		self.greeting_in_progress = False
		self.turn_in_flight = False
		self.finalizing = False
		self.last_active = clock()

	# ------------------------------------------------------------------
	# helpers
	# ------------------------------------------------------------------

	@property
	def required_exchanges(self) -> int:
		return self.assignment.exchanges if self.assignment is not None else 0

	@property
	def busy(self) -> bool:
		return self.greeting_in_progress or self.turn_in_flight or self.finalizing

	@property
	def progress(self) -> float:
		"""Display fraction, clamped to [0, 1]; the counter itself is not clamped."""
		if self.required_exchanges <= 0:
			return 0.0
		return max(0.0, min(1.0, self.exchange_count / self.required_exchanges))

	def authorize(self, assignment: Assignment) -> None:
		"""Only students enrolled in the assignment's course may work on it."""
		if not self.store.is_enrolled(self.student_id, assignment.course_id):
			raise UnauthorizedError(f"{self.student_id} is not enrolled in the course for assignment {self.assignment_id}")

	def _touch(self) -> None:
		self.last_active = self.clock()

	def _check_window(self) -> bool:
		"""Re-check the availability window; moves into LOCKED when closed."""
		if self.assignment is None:
			return False
		reason = lock_reason(self.assignment, self.clock())
		if reason is None:
			if self.state == SessionState.LOCKED:
				# Window reopened (e.g. due date moved); resume from stored progress
				self.lock_reason = None
				self.state = self._resting_state()
			return False
		self.lock_reason = reason
		self.state = SessionState.LOCKED
		return True

	def _resting_state(self) -> SessionState:
		if self.submission_id is None:
			return SessionState.UNINITIALIZED
		if self.submitted_at is not None:
			return SessionState.FINALIZED
		if not self.history:
			return SessionState.GREETING
		if self.exchange_count >= self.required_exchanges:
			return SessionState.AWAITING_FINALIZATION
		return SessionState.AWAITING_INPUT

	def _load_submission(self, sub: Submission) -> None:
		self.submission_id = sub.id
		self.character_id = sub.character_id
		self.history = [dict(turn) for turn in (sub.chat_history or [])]
		self.exchange_count = sub.current_exchange_count or 0
		self.status = sub.status
		self.pos_feedback = coerce_feedback_list(sub.pos_feedback)
		self.neg_feedback = coerce_feedback_list(sub.neg_feedback)
		self.submitted_at = sub.submitted_at
		self.version = sub.version
		self.greeted = bool(self.history)

	def _load_character(self) -> None:
		self.character_description = ""
		self.memory = []
		if not self.character_id or self.assignment is None:
			return
		try:
			character = self.store.get_character(self.character_id, self.assignment.language)
			self.character_description = character.character_description or ""
		except CharacterNotFoundError:
			logger.warning("Character %s (%s) is missing; continuing without a description", self.character_id, self.assignment.language)
		self.memory = self.store.get_memory(self.student_id, self.character_id)

	def _write(self, **fields: Any) -> Submission:
		row = self.store.upsert_submission(
			self.student_id,
			self.assignment_id,
			expected_version=self.version if self.submission_id is not None else None,
			**fields,
		)
		self.submission_id = row.id
		self.version = row.version
		return row

	def context(self) -> ChatContext:
		a = self.assignment
		return ChatContext(
			language=a.language,
			level=a.level,
			topic=a.topic,
			scenario=a.scenario,
			character_id=self.character_id or "",
			character_description=self.character_description,
			grammar=a.grammar,
			vocabulary=a.vocabulary,
			difficulty=a.difficulty,
			exchanges=a.exchanges,
			current_exchange_count=self.exchange_count,
			student_name=self.student_name,
			memory=", ".join(self.memory) if self.memory else None,
		)

	# ------------------------------------------------------------------
	# lifecycle
	# ------------------------------------------------------------------

	async def initialize(self) -> SessionState:
		"""Load the assignment and any existing submission and pick the state."""
		self._touch()
		assignment = self.store.get_assignment(self.assignment_id)
		self.authorize(assignment)
		self.assignment = assignment
		self.student_name = self.store.get_first_name(self.student_id)
		sub = self.store.get_submission(self.student_id, self.assignment_id)
		if sub is not None:
			self._load_submission(sub)
			self._load_character()
		self.state = self._resting_state()
		self._check_window()
		logger.info("Session %s/%s initialized in %s", self.student_id, self.assignment_id, self.state.value)
		return self.state

	async def start(self, character_id: str) -> SessionState:
		"""Create the submission with the chosen character (or switch character before the chat begins)."""
		self._touch()
		if self.assignment is None:
			await self.initialize()
		if self._check_window():
			raise TurnRejectedError(self.lock_reason)
		if self.busy:
			raise TurnRejectedError("Wait for the current reply before changing character")
		if self.history or self.state not in (SessionState.UNINITIALIZED, SessionState.GREETING):
			raise TurnRejectedError("The conversation has already started; restart it to pick another character")
		# Raises CharacterNotFoundError for characters outside the assignment's language
		self.store.get_character(character_id, self.assignment.language)
		row = self._write(character_id=character_id, status="not_started", chat_history=[], current_exchange_count=0)
		self._load_submission(row)
		self._load_character()
		self.state = SessionState.GREETING
		return self.state

	async def greet(self) -> Optional[str]:
		"""Generate the character's opening line, at most once.

		Returns None when a greeting already exists or is being generated.
		"""
		self._touch()
		if self._check_window():
			raise TurnRejectedError(self.lock_reason)
		if self.greeted or self.greeting_in_progress:
			return None
		if self.state != SessionState.GREETING:
			raise TurnRejectedError(f"Cannot greet while {self.state.value}")
		self.greeting_in_progress = True
		self.greeted = True
		try:
			reply = await self.tutor.respond(StartGreeting(), self.context(), [])
			history = [{"role": "assistant", "text": reply}]
			self._write(chat_history=history, status="in_progress")
			self.history = history
			self.status = "in_progress"
			self.state = SessionState.AWAITING_INPUT
			logger.info("Greeting generated for %s/%s", self.student_id, self.assignment_id)
			return reply
		except Exception:
			self.greeted = False
			raise
		finally:
			self.greeting_in_progress = False

	async def submit_turn(self, text: str) -> str:
		"""Send one student message and return the character's reply."""
		self._touch()
		message = (text or "").strip()
		if not message:
			raise TurnRejectedError("Message is empty")
		if self._check_window():
			raise TurnRejectedError(self.lock_reason)
		if self.turn_in_flight:
			raise TurnRejectedError("A reply is still on its way")
		if self.state in (SessionState.AWAITING_FINALIZATION, SessionState.FINALIZED):
			raise TurnRejectedError("All exchanges are done; finish the assignment")
		if self.state != SessionState.AWAITING_INPUT:
			raise TurnRejectedError(f"Cannot send a message while {self.state.value}")

		self.turn_in_flight = True
		self.state = SessionState.PROCESSING_TURN
		try:
			context = self.context()
			with_user = self.history + [{"role": "user", "text": message}]
			# Persist the student's words before calling out so a failure cannot lose them
			self._write(chat_history=with_user)
			self.history = with_user
			reply = await self.tutor.respond(SendMessage(message), context, with_user)
			new_count = self.exchange_count + 1
			status = "completed" if new_count >= self.required_exchanges else "in_progress"
			with_reply = with_user + [{"role": "assistant", "text": reply}]
			self._write(chat_history=with_reply, current_exchange_count=new_count, status=status)
			self.history = with_reply
			self.exchange_count = new_count
			self.status = status
			self.state = self._resting_state()
			return reply
		except Exception:
			if self.state == SessionState.PROCESSING_TURN:
				self.state = SessionState.AWAITING_INPUT
			raise
		finally:
			self.turn_in_flight = False

	async def finalize(self) -> FeedbackSummary:
		"""Summarize the transcript into strengths / improvements and close the submission.

		Calling it again after it succeeded returns the stored feedback untouched.
		"""
		self._touch()
		if self.submitted_at is not None:
			return FeedbackSummary.model_construct(strengths=list(self.pos_feedback), improvements=list(self.neg_feedback), personality_traits=None)
		if self._check_window():
			raise TurnRejectedError(self.lock_reason)
		if self.finalizing:
			raise TurnRejectedError("Feedback is already being generated")
		if self.state != SessionState.AWAITING_FINALIZATION:
			remaining = max(0, self.required_exchanges - self.exchange_count)
			raise TurnRejectedError(f"{remaining} exchange(s) left before the assignment can be finished")

		self.finalizing = True
		try:
			summary = await self.tutor.respond(RequestSummary(), self.context(), self.history)
			submitted_at = self.clock()
			self._write(
				pos_feedback=summary.strengths,
				neg_feedback=summary.improvements,
				status="completed",
				submitted_at=submitted_at,
			)
			self.pos_feedback = list(summary.strengths)
			self.neg_feedback = list(summary.improvements)
			self.status = "completed"
			self.submitted_at = submitted_at
			self.state = SessionState.FINALIZED
			logger.info("Submission %s finalized", self.submission_id)
		finally:
			self.finalizing = False

		if summary.personality_traits and self.character_id:
			try:
				self.store.save_memory(self.student_id, self.character_id, summary.personality_traits)
				self.memory = list(summary.personality_traits)
			except Exception:
				logger.warning("Could not save character memory for %s/%s", self.student_id, self.character_id, exc_info=True)
		return summary

	async def restart(self) -> SessionState:
		"""Blank the submission in place and go back to UNINITIALIZED."""
		self._touch()
		if self._check_window():
			raise TurnRejectedError(self.lock_reason)
		if self.busy:
			raise TurnRejectedError("Wait for the current reply before restarting")
		if self.submission_id is None:
			sub = self.store.get_submission(self.student_id, self.assignment_id)
			if sub is None:
				raise SubmissionNotFoundError("Nothing to restart: the assignment was never started")
			self.submission_id = sub.id
		row = self.store.reset_submission(self.submission_id)
		self._load_submission(row)
		self.state = SessionState.UNINITIALIZED
		logger.info("Submission %s restarted", self.submission_id)
		return self.state

	def snapshot(self) -> Dict[str, Any]:
		return {
			"state": self.state.value,
			"status": self.status,
			"locked": self.state == SessionState.LOCKED,
			"lock_reason": self.lock_reason,
			"character_id": self.character_id,
			"chat_history": list(self.history),
			"current_exchange_count": self.exchange_count,
			"required_exchanges": self.required_exchanges,
			"progress": self.progress,
			"busy": self.busy,
			"can_finalize": self.state == SessionState.AWAITING_FINALIZATION,
			"pos_feedback": list(self.pos_feedback),
			"neg_feedback": list(self.neg_feedback),
			"submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
		}


class SessionRegistry:
	"""Live sessions keyed by (student, assignment), owned by the running app."""

	def __init__(self, store: SubmissionStore, tutor: Tutor, clock: Callable[[], datetime] = utcnow) -> None:
		self.store = store
		self.tutor = tutor
		self.clock = clock
		self._sessions: Dict[Tuple[str, int], ConversationSession] = {}

	def __len__(self) -> int:
		return len(self._sessions)

	async def open(self, student_id: str, assignment_id: int) -> ConversationSession:
		key = (student_id, assignment_id)
		session = self._sessions.get(key)
		if session is None:
			session = ConversationSession(
				self.store,
				self.tutor,
				student_id=student_id,
				assignment_id=assignment_id,
				clock=self.clock,
			)
			await session.initialize()
			self._sessions[key] = session
		return session

	def discard(self, student_id: str, assignment_id: int) -> None:
		self._sessions.pop((student_id, assignment_id), None)

	def evict_idle(self, max_idle: timedelta) -> int:
		threshold = self.clock() - max_idle
		stale = [key for key, s in self._sessions.items() if s.last_active < threshold and not s.busy]
		for key in stale:
			del self._sessions[key]
		return len(stale)
