"""
Conversation lifecycle: greeting, turns, finalization, restart, locking.
"""

import asyncio
from datetime import timedelta

import pytest

pytestmark = [pytest.mark.asyncio, pytest.mark.lifecycle]

from linguachat.conversation import ConversationSession, SessionState
from linguachat.errors import (
	GeminiOverloadedError,
	StaleSubmissionError,
	SubmissionNotFoundError,
	TurnRejectedError,
	UnauthorizedError,
)
from linguachat.tutor import RequestSummary, SendMessage, StartGreeting

from conftest import GREETING, SUMMARY


async def _ready(session):
	await session.initialize()
	await session.start("Lucia")
	await session.greet()
	return session


def _calls_of(tutor, kind):
	return [c for c in tutor.respond.call_args_list if isinstance(c.args[0], kind)]


# ============================================
# Initialize / start / greeting
# ============================================

async def test_initialize_without_submission_stays_uninitialized(session, store):
	state = await session.initialize()

	assert state == SessionState.UNINITIALIZED
	assert store.get_submission("sam", session.assignment_id) is None


async def test_start_creates_not_started_submission(session, store):
	await session.initialize()
	state = await session.start("Lucia")

	assert state == SessionState.GREETING
	sub = store.get_submission("sam", session.assignment_id)
	assert sub.character_id == "Lucia"
	assert sub.status == "not_started"
	assert sub.chat_history == []
	assert sub.current_exchange_count == 0


async def test_greeting_becomes_first_assistant_turn(session, store, tutor):
	await _ready(session)

	sub = store.get_submission("sam", session.assignment_id)
	assert sub.chat_history == [{"role": "assistant", "text": GREETING}]
	assert sub.status == "in_progress"
	assert sub.current_exchange_count == 0
	assert session.state == SessionState.AWAITING_INPUT

	request, context, history = tutor.respond.call_args.args
	assert isinstance(request, StartGreeting)
	assert history == []
	assert context.student_name == "Sam"
	assert context.character_description.startswith("A cheerful barista")


async def test_greeting_is_generated_at_most_once(session, tutor):
	await _ready(session)

	assert await session.greet() is None
	assert len(_calls_of(tutor, StartGreeting)) == 1


async def test_overlapping_greeting_requests_only_send_one(session, tutor):
	await session.initialize()
	await session.start("Lucia")
	gate = asyncio.Event()

	async def slow_greeting(request, context, history=()):
		await gate.wait()
		return GREETING

	tutor.respond.side_effect = slow_greeting
	first = asyncio.create_task(session.greet())
	await asyncio.sleep(0)

	assert session.busy
	assert await session.greet() is None

	gate.set()
	assert await first == GREETING
	assert tutor.respond.await_count == 1
	assert not session.busy


async def test_failed_greeting_can_be_retried(session, tutor, store):
	await session.initialize()
	await session.start("Lucia")
	tutor.respond.side_effect = GeminiOverloadedError(3)

	with pytest.raises(GeminiOverloadedError):
		await session.greet()
	assert session.state == SessionState.GREETING
	assert store.get_submission("sam", session.assignment_id).chat_history == []

	tutor.respond.side_effect = lambda *a, **kw: GREETING
	assert await session.greet() == GREETING


async def test_existing_history_is_restored_without_greeting(make_session, tutor):
	first = await _ready(make_session())
	await first.submit_turn("Hola, un café por favor")

	second = make_session()
	state = await second.initialize()

	assert state == SessionState.AWAITING_INPUT
	assert second.exchange_count == 1
	assert len(second.history) == 3
	assert await second.greet() is None
	assert len(_calls_of(tutor, StartGreeting)) == 1


async def test_start_rejected_once_conversation_began(session):
	await _ready(session)

	with pytest.raises(TurnRejectedError):
		await session.start("Lucia")


# ============================================
# Turns
# ============================================

async def test_each_turn_adds_one_exchange_and_two_turns(session, store):
	await _ready(session)

	for n in range(1, 4):
		reply = await session.submit_turn(f"mensaje {n}")
		assert reply == f"Respuesta a: mensaje {n}"
		assert session.exchange_count == n

	sub = store.get_submission("sam", session.assignment_id)
	assert sub.current_exchange_count == 3
	assert len(sub.chat_history) == 1 + 2 * 3
	assert [t["role"] for t in sub.chat_history[1:3]] == ["user", "assistant"]
	assert sub.status == "in_progress"


async def test_turn_sends_full_history_and_count_before_increment(session, tutor):
	await _ready(session)
	await session.submit_turn("primero")
	await session.submit_turn("segundo")

	request, context, history = tutor.respond.call_args.args
	assert request == SendMessage("segundo")
	assert context.current_exchange_count == 1
	assert history[-1] == {"role": "user", "text": "segundo"}
	assert len(history) == 4


async def test_required_exchanges_complete_submission_and_gate_sixth_message(session, store):
	await _ready(session)
	for n in range(5):
		await session.submit_turn(f"mensaje {n}")

	assert session.state == SessionState.AWAITING_FINALIZATION
	assert session.progress == 1.0
	sub = store.get_submission("sam", session.assignment_id)
	assert sub.status == "completed"
	assert sub.current_exchange_count == 5

	with pytest.raises(TurnRejectedError):
		await session.submit_turn("uno más")
	assert store.get_submission("sam", session.assignment_id).current_exchange_count == 5

	# The storage layer itself still lets the counter run past the requirement
	row = store.upsert_submission("sam", session.assignment_id, current_exchange_count=6)
	assert row.current_exchange_count == 6


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
async def test_blank_messages_are_rejected_locally(session, tutor, text):
	await _ready(session)
	tutor.respond.reset_mock()

	with pytest.raises(TurnRejectedError):
		await session.submit_turn(text)
	tutor.respond.assert_not_awaited()


async def test_second_message_while_reply_pending_is_rejected(session, tutor):
	await _ready(session)
	gate = asyncio.Event()

	async def slow_reply(request, context, history=()):
		await gate.wait()
		return "vale"

	tutor.respond.side_effect = slow_reply
	pending = asyncio.create_task(session.submit_turn("primero"))
	await asyncio.sleep(0)

	assert session.state == SessionState.PROCESSING_TURN
	with pytest.raises(TurnRejectedError):
		await session.submit_turn("segundo")

	gate.set()
	assert await pending == "vale"
	assert session.exchange_count == 1


async def test_user_turn_survives_failed_completion(session, store, tutor):
	await _ready(session)
	tutor.respond.side_effect = GeminiOverloadedError(3)

	with pytest.raises(GeminiOverloadedError):
		await session.submit_turn("¿Tienes churros?")

	sub = store.get_submission("sam", session.assignment_id)
	assert sub.chat_history[-1] == {"role": "user", "text": "¿Tienes churros?"}
	assert sub.current_exchange_count == 0
	assert session.state == SessionState.AWAITING_INPUT
	assert not session.busy


async def test_progress_is_fraction_of_required(session):
	await _ready(session)
	await session.submit_turn("uno")
	await session.submit_turn("dos")

	assert session.progress == pytest.approx(0.4)
	assert session.snapshot()["current_exchange_count"] == 2


# ============================================
# Locking
# ============================================

async def test_locked_before_opening(session, clock, assignment):
	clock.now = assignment.start_at - timedelta(hours=2)

	state = await session.initialize()

	assert state == SessionState.LOCKED
	assert session.lock_reason.startswith("Opens ")
	with pytest.raises(TurnRejectedError):
		await session.start("Lucia")


async def test_due_date_passing_mid_conversation_locks_without_erasing(session, clock, assignment, store, tutor):
	await _ready(session)
	await session.submit_turn("hola")
	clock.now = assignment.due_at + timedelta(minutes=1)
	tutor.respond.reset_mock()

	with pytest.raises(TurnRejectedError) as exc:
		await session.submit_turn("¿sigues ahí?")

	assert exc.value.reason == "Closed (Due date passed)."
	assert session.state == SessionState.LOCKED
	tutor.respond.assert_not_awaited()
	assert len(store.get_submission("sam", session.assignment_id).chat_history) == 3
	with pytest.raises(TurnRejectedError):
		await session.restart()


# ============================================
# Finalization
# ============================================

async def _complete(session):
	await _ready(session)
	for n in range(session.required_exchanges):
		await session.submit_turn(f"mensaje {n}")
	return session


async def test_finalize_stores_feedback_and_timestamp(session, store, clock):
	await _complete(session)

	summary = await session.finalize()

	assert summary.strengths == SUMMARY.strengths
	sub = store.get_submission("sam", session.assignment_id)
	assert sub.pos_feedback == SUMMARY.strengths
	assert sub.neg_feedback == SUMMARY.improvements
	assert sub.status == "completed"
	assert sub.submitted_at == clock.now
	assert session.state == SessionState.FINALIZED
	assert store.get_memory("sam", "Lucia") == SUMMARY.personality_traits


async def test_finalize_twice_keeps_first_submission(session, store, clock, tutor):
	await _complete(session)
	await session.finalize()
	first_submitted = store.get_submission("sam", session.assignment_id).submitted_at
	clock.advance(minutes=5)

	again = await session.finalize()

	assert again.strengths == SUMMARY.strengths
	assert store.get_submission("sam", session.assignment_id).submitted_at == first_submitted
	assert len(_calls_of(tutor, RequestSummary)) == 1


async def test_finalize_before_required_exchanges_is_rejected(session, tutor):
	await _ready(session)
	await session.submit_turn("hola")

	with pytest.raises(TurnRejectedError) as exc:
		await session.finalize()
	assert "4 exchange(s) left" in exc.value.reason
	assert not _calls_of(tutor, RequestSummary)


async def test_memory_save_failure_does_not_fail_finalize(session, store, monkeypatch):
	await _complete(session)

	def broken(*args, **kwargs):
		raise RuntimeError("db down")

	monkeypatch.setattr(store, "save_memory", broken)
	await session.finalize()

	assert store.get_submission("sam", session.assignment_id).submitted_at is not None


async def test_memory_feeds_next_conversation_with_same_character(make_session, store, clock, course):
	await (await _complete(make_session())).finalize()
	other = store.create_assignment(
		course_id=course.id,
		teacher_id="ms_garcia",
		title="At the market",
		topic="Buying fruit",
		scenario="Buying fruit at the Triana market",
		language="Spanish",
		level="Beginner (Year 1)",
		exchanges=3,
		start_at=clock.now - timedelta(days=1),
	)

	session = make_session(assignment_id=other.id)
	await session.initialize()
	await session.start("Lucia")

	assert session.context().memory == "Curious, Likes coffee, Jokes a lot"


# ============================================
# Restart / ownership / concurrency
# ============================================

async def test_restart_resets_submission_in_place(session, store):
	await _complete(session)
	await session.finalize()
	sub_id = session.submission_id

	state = await session.restart()

	assert state == SessionState.UNINITIALIZED
	sub = store.get_submission("sam", session.assignment_id)
	assert sub.id == sub_id
	assert sub.chat_history == []
	assert sub.current_exchange_count == 0
	assert sub.status == "not_started"
	assert sub.pos_feedback is None
	assert sub.neg_feedback is None
	assert sub.submitted_at is None


async def test_restart_allows_exactly_one_new_greeting(make_session, tutor):
	first = await _ready(make_session())
	await first.restart()

	again = make_session()
	assert await again.initialize() == SessionState.GREETING
	await again.greet()
	assert await again.greet() is None
	assert len(_calls_of(tutor, StartGreeting)) == 2


async def test_restart_without_submission(session):
	await session.initialize()

	with pytest.raises(SubmissionNotFoundError):
		await session.restart()


async def test_student_outside_the_course_is_unauthorized(make_session, store, tutor):
	stranger = make_session(student_id="stranger")

	with pytest.raises(UnauthorizedError):
		await stranger.initialize()
	with pytest.raises(UnauthorizedError):
		await stranger.start("Lucia")

	assert store.get_submission("stranger", stranger.assignment_id) is None
	tutor.respond.assert_not_awaited()


async def test_character_cannot_change_while_greeting_is_generated(make_session, store, tutor):
	store.add_character(character_id="Pablo", language="Spanish", character_description="A chef", order=2)
	session = make_session()
	await session.initialize()
	await session.start("Lucia")
	gate = asyncio.Event()

	async def slow_greeting(request, context, history=()):
		await gate.wait()
		return f"greeting as {context.character_id}"

	tutor.respond.side_effect = slow_greeting
	pending = asyncio.create_task(session.greet())
	await asyncio.sleep(0)

	with pytest.raises(TurnRejectedError):
		await session.start("Pablo")

	gate.set()
	assert await pending == "greeting as Lucia"
	sub = store.get_submission("sam", session.assignment_id)
	assert sub.character_id == "Lucia"
	assert sub.chat_history == [{"role": "assistant", "text": "greeting as Lucia"}]


async def test_second_tab_with_stale_version_is_rejected(make_session, store):
	tab_a = await _ready(make_session())
	tab_b = make_session()
	await tab_b.initialize()

	await tab_a.submit_turn("desde la pestaña A")
	with pytest.raises(StaleSubmissionError):
		await tab_b.submit_turn("desde la pestaña B")

	sub = store.get_submission("sam", tab_a.assignment_id)
	assert sub.current_exchange_count == 1
	assert all(t["text"] != "desde la pestaña B" for t in sub.chat_history)
	assert tab_b.state == SessionState.AWAITING_INPUT
