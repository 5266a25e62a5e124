from __future__ import annotations
import asyncio
import logging
import httpx
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from .errors import GeminiError, GeminiNotConfiguredError, GeminiOverloadedError
from .settings import settings

logger = logging.getLogger(__name__)

Turn = Dict[str, str]


def _is_overloaded(response: httpx.Response) -> bool:
	if response.status_code == 503:
		return True
	# Only error bodies; a reply may legitimately contain the word
	return response.is_error and "overloaded" in response.text.lower()


def history_to_contents(history: Sequence[Turn]) -> List[Dict[str, Any]]:
	"""Map stored turns ({role, text}) onto Gemini contents.

	Gemini wants the first content to come from the user, so an opening
	assistant greeting is dropped; the greeting still lives in the system
	instruction's scenario anyway.
	"""
	contents = [
		{"role": "user" if turn.get("role") == "user" else "model", "parts": [{"text": turn.get("text") or ""}]}
		for turn in history
	]
	if contents and contents[0]["role"] == "model":
		contents.pop(0)
	return contents


class GeminiClient:
	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		max_attempts: Optional[int] = None,
		retry_delay: Optional[float] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
	) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise GeminiNotConfiguredError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		self.provider = settings.gemini_provider
		if self.provider == "vertex":
			region = settings.vertex_region
			project = settings.vertex_project or "placeholder-project"
			# Vertex AI Generative REST endpoint (API key via header)
			self.base_url = base_url or (
				f"https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}/publishers/google/models/{self.model}:generateContent"
			)
			self._auth_in_query = False
		else:
			# Google AI Studio (Generative Language API)
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
			self._auth_in_query = True
		self.max_attempts = max(1, max_attempts or settings.gemini_max_attempts)
		self.retry_delay = settings.gemini_retry_delay_seconds if retry_delay is None else retry_delay
		self._sleep = sleep
		self._client = httpx.AsyncClient(timeout=settings.gemini_timeout_seconds, transport=transport)

	async def generate(self, prompt: str) -> str:
		"""One-shot completion with no chat context (summaries, overviews)."""
		payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
		return await self._post_payload(payload)

	async def chat(self, system_instruction: str, history: Sequence[Turn], message: str) -> str:
		contents = history_to_contents(history)
		contents.append({"role": "user", "parts": [{"text": message}]})
		payload: Dict[str, Any] = {
			"systemInstruction": {"parts": [{"text": system_instruction}]},
			"contents": contents,
		}
		return await self._post_payload(payload)

	async def _post_payload(self, payload: Dict[str, Any]) -> str:
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._auth_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		for attempt in range(1, self.max_attempts + 1):
			try:
				r = await self._client.post(self.base_url, params=params, headers=headers, json=payload)
			except httpx.RequestError as net_err:
				raise GeminiError(f"Gemini request failed: {net_err}") from net_err
			if _is_overloaded(r):
				if attempt < self.max_attempts:
					delay = self.retry_delay * attempt
					logger.warning("Gemini overloaded (attempt %d/%d), retrying in %.1fs", attempt, self.max_attempts, delay)
					await self._sleep(delay)
					continue
				logger.error("Gemini still overloaded after %d attempts", self.max_attempts)
				raise GeminiOverloadedError(self.max_attempts)
			try:
				r.raise_for_status()
			except httpx.HTTPStatusError as http_err:
				raise GeminiError(f"Gemini returned HTTP {r.status_code}: {r.text}") from http_err
			try:
				data = r.json()
				return data["candidates"][0]["content"]["parts"][0]["text"]
			except Exception as err:
				raise GeminiError(f"Unexpected Gemini response: {r.text}") from err
		# max_attempts >= 1, the loop always returns or raises
		raise GeminiOverloadedError(self.max_attempts)

	async def aclose(self) -> None:
		await self._client.aclose()
