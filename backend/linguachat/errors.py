from __future__ import annotations


class LinguaChatError(Exception):
	"""Base class for errors raised by the conversation service."""


class GeminiError(LinguaChatError):
	"""The text-completion provider failed or answered with an unexpected shape."""


class GeminiOverloadedError(GeminiError):
	"""The provider stayed overloaded through every retry attempt."""

	def __init__(self, attempts: int) -> None:
		super().__init__(f"Gemini is overloaded (gave up after {attempts} attempts)")
		self.attempts = attempts


class GeminiNotConfiguredError(GeminiError):
	"""No API key is configured, so no completion can be requested."""


class MalformedOutputError(LinguaChatError):
	"""A JSON-returning prompt produced text that could not be parsed or validated."""


class NotFoundError(LinguaChatError):
	pass


class AssignmentNotFoundError(NotFoundError):
	pass


class SubmissionNotFoundError(NotFoundError):
	pass


class CourseNotFoundError(NotFoundError):
	pass


class CharacterNotFoundError(NotFoundError):
	pass


class UnauthorizedError(LinguaChatError):
	"""The acting user does not own the record they tried to operate on."""


class StaleSubmissionError(LinguaChatError):
	"""A write carried an older submission version than the stored one."""

	def __init__(self, expected: int, actual: int) -> None:
		super().__init__(f"submission changed elsewhere (expected version {expected}, found {actual})")
		self.expected = expected
		self.actual = actual


class TurnRejectedError(LinguaChatError):
	"""The session cannot accept this operation in its current state."""

	def __init__(self, reason: str) -> None:
		super().__init__(reason)
		self.reason = reason
