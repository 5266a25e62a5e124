from __future__ import annotations
from fastapi import Request

from .conversation import SessionRegistry
from .store import SubmissionStore
from .tutor import Tutor


def get_store(request: Request) -> SubmissionStore:
	return request.app.state.store


def get_registry(request: Request) -> SessionRegistry:
	return request.app.state.registry


def get_tutor(request: Request) -> Tutor:
	return request.app.state.tutor
