import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

import video_ingest.models  # noqa: F401
from video_ingest.db import Base

VERSIONS = Path(__file__).resolve().parents[1] / "alembic" / "versions"


def _load(path: Path):
    spec = importlib.util.spec_from_file_location(path.stem, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_initial_migration_matches_models(tmp_path: Path) -> None:
    migration = _load(VERSIONS / "20261019_000001_initial_schema.py")
    engine = create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")

    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            migration.upgrade()

    inspector = inspect(engine)
    assert set(inspector.get_table_names()) == set(Base.metadata.tables)
    for name, table in Base.metadata.tables.items():
        migrated = {column["name"] for column in inspector.get_columns(name)}
        assert migrated == {column.name for column in table.columns}, name
    unique = inspector.get_unique_constraints("received_chunks")
    assert {"name": "uq_session_chunk_index", "column_names": ["session_id", "chunk_index"]} in [
        {"name": c["name"], "column_names": c["column_names"]} for c in unique
    ]

    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            migration.downgrade()
    assert inspect(engine).get_table_names() == []
    engine.dispose()
