"""Parsing for the JSON-returning prompts (feedback summary, skill overviews).

Gemini often wraps JSON in a markdown fence even when told not to, so every
JSON reply goes through ``strip_code_fence`` first. Anything that still fails
to parse, or parses into the wrong shape, is a ``MalformedOutputError``; the
caller decides whether to try again.
"""

from __future__ import annotations
import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError, field_validator

from .errors import MalformedOutputError

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*[ \t]*\n?(.*?)```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*[ \t]*\n?")
_CLOSE_FENCE_RE = re.compile(r"\n?```$")


def strip_code_fence(text: str) -> str:
	text = (text or "").strip()
	match = _FENCE_RE.search(text)
	if match:
		return match.group(1).strip()
	# Truncated replies can carry only one half of the fence
	text = _OPEN_FENCE_RE.sub("", text)
	text = _CLOSE_FENCE_RE.sub("", text)
	return text.strip()


def parse_json_object(text: str) -> Dict[str, Any]:
	cleaned = strip_code_fence(text)
	try:
		data = json.loads(cleaned)
	except json.JSONDecodeError as err:
		raise MalformedOutputError(f"Gemini did not return valid JSON: {err}") from err
	if not isinstance(data, dict):
		raise MalformedOutputError("Gemini returned JSON that is not an object")
	return data


def _three_items(value: Any) -> List[str]:
	if not isinstance(value, list):
		raise ValueError("expected a list of strings")
	items = [str(v).strip() for v in value if str(v).strip()]
	if not items:
		raise ValueError("expected at least one non-empty string")
	# Prompts ask for exactly three; extra items are dropped
	return items[:3]


class FeedbackSummary(BaseModel):
	strengths: List[str]
	improvements: List[str]
	personality_traits: Optional[List[str]] = None

	@field_validator("strengths", "improvements", mode="before")
	@classmethod
	def _check_items(cls, value: Any) -> List[str]:
		return _three_items(value)

	@field_validator("personality_traits", mode="before")
	@classmethod
	def _check_traits(cls, value: Any) -> Optional[List[str]]:
		if value is None or value == []:
			return None
		return _three_items(value)


class SkillOverview(BaseModel):
	strengths: List[str]
	weaknesses: List[str]

	@field_validator("strengths", "weaknesses", mode="before")
	@classmethod
	def _check_items(cls, value: Any) -> List[str]:
		return _three_items(value)


def parse_feedback_summary(text: str) -> FeedbackSummary:
	data = parse_json_object(text)
	try:
		return FeedbackSummary.model_validate(data)
	except ValidationError as err:
		raise MalformedOutputError(f"Feedback summary has the wrong shape: {err}") from err


def parse_overview(text: str) -> SkillOverview:
	data = parse_json_object(text)
	try:
		return SkillOverview.model_validate(data)
	except ValidationError as err:
		raise MalformedOutputError(f"Overview has the wrong shape: {err}") from err


def coerce_feedback_list(raw: Any) -> List[str]:
	"""Read pos/neg feedback that may be a list, a JSON-encoded list or plain lines."""
	if raw is None:
		return []
	if isinstance(raw, list):
		return [str(item) for item in raw]
	if isinstance(raw, str):
		try:
			decoded = json.loads(raw)
		except json.JSONDecodeError:
			return [line.strip() for line in raw.split("\n") if line.strip()]
		if isinstance(decoded, list):
			return [str(item) for item in decoded]
		return [str(decoded)]
	return [str(raw)]
