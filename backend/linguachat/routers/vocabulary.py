from __future__ import annotations
import re
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..deps import get_store
from ..store import SubmissionStore
from .auth import User, get_current_student


router = APIRouter(prefix="/vocabulary", tags=["vocabulary"])


class SaveWordRequest(BaseModel):
	word: str
	language: str


class VocabularyList(BaseModel):
	words: List[str]


def clean_selection(text: str) -> str:
	# Selected text from a chat bubble, minus trailing punctuation
	return re.sub(r"[.,!?;:]+$", "", (text or "").strip()).strip()


@router.post("", status_code=201)
async def save_word(req: SaveWordRequest, user: User = Depends(get_current_student), store: SubmissionStore = Depends(get_store)):
	word = clean_selection(req.word)
	if not word:
		raise HTTPException(status_code=400, detail="word is required")
	if len(word) > 256:
		raise HTTPException(status_code=400, detail="selection is too long to save")
	added = store.add_vocabulary_word(user.username, req.language, word)
	return {"word": word, "added": added}


@router.get("", response_model=VocabularyList)
async def list_words(
	language: Optional[str] = None,
	user: User = Depends(get_current_student),
	store: SubmissionStore = Depends(get_store),
):
	return VocabularyList(words=store.list_vocabulary(user.username, language))
