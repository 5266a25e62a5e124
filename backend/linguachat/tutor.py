from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from .gemini_client import GeminiClient
from .json_output import FeedbackSummary, SkillOverview, parse_feedback_summary, parse_overview
from .prompts import (
	ChatContext,
	build_assignment_overview_prompt,
	build_feedback_prompt,
	build_greeting_message,
	build_student_overview_prompt,
	build_system_instruction,
)


@dataclass(frozen=True)
class StartGreeting:
	pass


@dataclass(frozen=True)
class SendMessage:
	text: str


@dataclass(frozen=True)
class RequestSummary:
	pass


TutorRequest = Union[StartGreeting, SendMessage, RequestSummary]


class Tutor:
	"""Turns tutor requests into Gemini calls.

	Greeting and message requests answer with the character's text; a summary
	request answers with a parsed ``FeedbackSummary``.
	"""

	def __init__(self, client: Optional[GeminiClient] = None) -> None:
		self._client = client

	@property
	def client(self) -> GeminiClient:
		# Built on first use so the app still serves auth and teacher routes without a key
		if self._client is None:
			self._client = GeminiClient()
		return self._client

	async def respond(
		self,
		request: TutorRequest,
		context: ChatContext,
		history: Sequence[Dict[str, str]] = (),
	) -> Union[str, FeedbackSummary]:
		if isinstance(request, StartGreeting):
			return await self.client.chat(build_system_instruction(context), [], build_greeting_message(context))
		if isinstance(request, SendMessage):
			# The last history entry is the user's message itself; it goes out as the new message
			prior = list(history)
			if prior and prior[-1].get("role") == "user" and prior[-1].get("text") == request.text:
				prior = prior[:-1]
			return await self.client.chat(build_system_instruction(context), prior, request.text)
		if isinstance(request, RequestSummary):
			raw = await self.client.generate(build_feedback_prompt(context, history))
			return parse_feedback_summary(raw)
		raise TypeError(f"unknown tutor request: {request!r}")

	async def assignment_overview(self, feedback: List[Dict[str, Any]]) -> SkillOverview:
		raw = await self.client.generate(build_assignment_overview_prompt(feedback))
		return parse_overview(raw)

	async def student_overview(self, feedback: List[Dict[str, Any]]) -> SkillOverview:
		raw = await self.client.generate(build_student_overview_prompt(feedback))
		return parse_overview(raw)

	async def aclose(self) -> None:
		if self._client is not None:
			await self._client.aclose()
