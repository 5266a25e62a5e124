from typing import Dict, List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging

from ..deps import get_tutor
from ..errors import GeminiError, GeminiNotConfiguredError, GeminiOverloadedError, MalformedOutputError
from ..prompts import ChatContext
from ..tutor import RequestSummary, SendMessage, StartGreeting, Tutor, TutorRequest
from .auth import User, get_current_user

router = APIRouter(prefix="/tutor", tags=["tutor"])

logger = logging.getLogger(__name__)

GREETING_SENTINEL = "START_CONVERSATION_GREETING"
SUMMARY_SENTINEL = "GENERATE_FEEDBACK_SUMMARY"


class HistoryTurn(BaseModel):
	role: str
	text: str = ""


class CompletionRequest(BaseModel):
	message: str
	history: List[HistoryTurn] = []
	context: ChatContext = ChatContext()


def to_tutor_request(message: str) -> TutorRequest:
	if message == GREETING_SENTINEL:
		return StartGreeting()
	if message == SUMMARY_SENTINEL:
		return RequestSummary()
	return SendMessage(message)


@router.post("")
async def complete(req: CompletionRequest, user: User = Depends(get_current_user), tutor: Tutor = Depends(get_tutor)):
	"""Raw completion endpoint (also used by the teacher's chat demo)."""
	request = to_tutor_request(req.message)
	history: List[Dict[str, str]] = [turn.model_dump() for turn in req.history]
	try:
		result = await tutor.respond(request, req.context, history)
	except MalformedOutputError as e:
		logger.error("Feedback summary was not valid JSON: %s", e)
		return JSONResponse(status_code=502, content={"error": "Failed to fetch AI response", "details": str(e)})
	except GeminiOverloadedError as e:
		return JSONResponse(status_code=503, content={"error": "The tutor is busy right now, please try again later", "details": str(e)})
	except GeminiNotConfiguredError as e:
		return JSONResponse(status_code=503, content={"error": "The tutor is not available on this server", "details": str(e)})
	except GeminiError as e:
		logger.error("Gemini API error: %s", e)
		return JSONResponse(status_code=502, content={"error": "Failed to fetch AI response", "details": str(e)})
	if isinstance(request, RequestSummary):
		return result.model_dump(exclude_none=True)
	return {"reply": result}
