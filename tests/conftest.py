from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from video_ingest.coordinator import UploadCoordinator
from video_ingest.db import Base
from video_ingest.media_service import InMemoryMediaService
from video_ingest.session_store import MediaJobStore, SessionStore
from video_ingest.storage import LocalChunkStorage


@pytest.fixture
def session_factory(tmp_path: Path):
    engine = create_engine(f"sqlite:///{tmp_path / 'sessions.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


@pytest.fixture
def storage(tmp_path: Path) -> LocalChunkStorage:
    return LocalChunkStorage(str(tmp_path / "chunks"))


@pytest.fixture
def media_service() -> InMemoryMediaService:
    return InMemoryMediaService(processing_ticks=2)


@pytest.fixture
def coordinator(session_factory, storage, media_service) -> UploadCoordinator:
    return UploadCoordinator(
        store=SessionStore(session_factory),
        jobs=MediaJobStore(session_factory),
        storage=storage,
        media_service=media_service,
        chunk_size=4,
        max_retries=2,
    )
