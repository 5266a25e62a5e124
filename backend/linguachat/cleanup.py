from __future__ import annotations
import logging
from datetime import timedelta

from .conversation import SessionRegistry

logger = logging.getLogger(__name__)


def evict_idle_sessions(registry: SessionRegistry, idle_minutes: int) -> int:
	# Only the in-memory session goes; the submission row keeps all progress
	removed = registry.evict_idle(timedelta(minutes=idle_minutes))
	if removed:
		logger.info("Evicted %d idle conversation session(s); %d still live", removed, len(registry))
	return removed
