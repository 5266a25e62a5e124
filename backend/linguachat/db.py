from __future__ import annotations
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./linguachat.db"

Base = declarative_base()


def make_engine(url: str) -> Engine:
	if not url.startswith("sqlite"):
		return create_engine(url, future=True)
	connect_args = {"check_same_thread": False}
	if url in ("sqlite://", "sqlite:///:memory:"):
		# One shared connection, otherwise every session sees its own empty database
		return create_engine(url, connect_args=connect_args, poolclass=StaticPool, future=True)
	return create_engine(url, connect_args=connect_args, future=True)


def make_session_factory(bind: Engine) -> sessionmaker:
	return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind, future=True)


engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Generator[Session, None, None]:
	"""Yield one DB session; commit on success, roll back on error."""
	db = factory()
	try:
		yield db
		db.commit()
	except Exception:
		db.rollback()
		raise
	finally:
		db.close()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()
