import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .cleanup import evict_idle_sessions
from .conversation import SessionRegistry
from .db import Base, engine
from .errors import (
	GeminiError,
	GeminiNotConfiguredError,
	GeminiOverloadedError,
	MalformedOutputError,
	NotFoundError,
	StaleSubmissionError,
	TurnRejectedError,
	UnauthorizedError,
)
from .routers import assignments, auth, courses, teacher, tutor, vocabulary
from .settings import settings
from .store import SubmissionStore
from .tutor import Tutor

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _cleanup_watcher(registry: SessionRegistry) -> None:
	while True:
		await asyncio.sleep(60)
		try:
			evict_idle_sessions(registry, settings.session_idle_minutes)
		except Exception:
			logger.exception("Idle session cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
	Base.metadata.create_all(bind=engine)
	store = SubmissionStore()
	tutor_ = Tutor()
	app.state.store = store
	app.state.tutor = tutor_
	app.state.registry = SessionRegistry(store, tutor_)
	watcher = asyncio.create_task(_cleanup_watcher(app.state.registry))
	try:
		yield
	finally:
		watcher.cancel()
		await tutor_.aclose()


app = FastAPI(title="LinguaChat API", lifespan=lifespan)
app.include_router(auth.router)
app.include_router(courses.router)
app.include_router(assignments.router)
app.include_router(vocabulary.router)
app.include_router(teacher.router)
app.include_router(tutor.router)


def _error(status_code: int, detail: str) -> JSONResponse:
	return JSONResponse(status_code=status_code, content={"detail": detail})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
	return _error(404, str(exc))


@app.exception_handler(UnauthorizedError)
async def _unauthorized(request: Request, exc: UnauthorizedError):
	return _error(403, str(exc))


@app.exception_handler(TurnRejectedError)
async def _turn_rejected(request: Request, exc: TurnRejectedError):
	return _error(409, exc.reason)


@app.exception_handler(StaleSubmissionError)
async def _stale(request: Request, exc: StaleSubmissionError):
	return _error(409, "This conversation was updated in another window; reload it to continue.")


@app.exception_handler(MalformedOutputError)
async def _malformed(request: Request, exc: MalformedOutputError):
	logger.error("Unusable model output: %s", exc)
	return _error(502, "The tutor gave an unreadable answer, please try again.")


@app.exception_handler(GeminiError)
async def _gemini(request: Request, exc: GeminiError):
	if isinstance(exc, GeminiOverloadedError):
		return _error(503, "The tutor is busy right now, please try again later.")
	if isinstance(exc, GeminiNotConfiguredError):
		logger.error("Gemini call attempted without GEMINI_API_KEY")
		return _error(503, "The tutor is not available on this server.")
	logger.error("Gemini call failed: %s", exc)
	return _error(502, "Failed to fetch AI response.")


@app.get("/info")
def root():
	return {"status": "ok", "gemini_configured": bool(settings.gemini_api_key)}
