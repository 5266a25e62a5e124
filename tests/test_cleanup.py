import pytest

from linguachat.cleanup import evict_idle_sessions
from linguachat.conversation import SessionRegistry


@pytest.mark.asyncio
async def test_idle_sessions_are_evicted_but_progress_kept(store, tutor, clock, assignment, enrolled, character):
	registry = SessionRegistry(store, tutor, clock=clock)
	session = await registry.open("sam", assignment.id)
	await session.start("Lucia")
	await session.greet()
	assert await registry.open("sam", assignment.id) is session

	clock.advance(minutes=30)
	assert evict_idle_sessions(registry, idle_minutes=60) == 0

	clock.advance(minutes=31)
	assert evict_idle_sessions(registry, idle_minutes=60) == 1
	assert len(registry) == 0

	reopened = await registry.open("sam", assignment.id)
	assert reopened is not session
	assert len(reopened.history) == 1


@pytest.mark.asyncio
async def test_busy_sessions_are_not_evicted(store, tutor, clock, assignment, enrolled):
	registry = SessionRegistry(store, tutor, clock=clock)
	session = await registry.open("sam", assignment.id)
	session.turn_in_flight = True

	clock.advance(hours=5)

	assert evict_idle_sessions(registry, idle_minutes=60) == 0
	assert len(registry) == 1
