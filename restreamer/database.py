"""Engine and session factory for the relational store."""

from __future__ import annotations

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig
from .models import Base

logger = logging.getLogger(__name__)

SessionFactory = sessionmaker[Session]


def create_session_factory(config: DatabaseConfig) -> SessionFactory:
    """Create the engine, ensure the schema exists and return a session factory."""
    engine_kwargs = {"echo": config.echo}
    if config.url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if config.url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty database
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(config.url, **engine_kwargs)
    Base.metadata.create_all(engine)
    logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))
    return sessionmaker(bind=engine, expire_on_commit=False)
