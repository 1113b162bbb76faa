"""Tests for the alembic revisions"""

import importlib.util
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect, text

from blobkeeper.database import DatabaseService
from blobkeeper.services.metadata_store import MetadataStore

VERSIONS_DIR = Path(__file__).resolve().parent.parent / "alembic" / "versions"


def load_revisions():
    """Revision modules ordered from base to head"""
    modules = {}
    for path in VERSIONS_DIR.glob("*.py"):
        spec = importlib.util.spec_from_file_location(f"revision_{path.stem}", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        modules[module.revision] = module

    ordered = []
    current = next(m for m in modules.values() if m.down_revision is None)
    while current is not None:
        ordered.append(current)
        current = next((m for m in modules.values() if m.down_revision == current.revision), None)
    assert len(ordered) == len(modules), "revision chain has gaps or branches"
    return ordered


def apply(engine, revisions, direction: str):
    with engine.begin() as conn:
        context = MigrationContext.configure(conn)
        with Operations.context(context):
            for module in revisions:
                getattr(module, direction)()


def test_revision_chain():
    """Test that revisions form one linear chain"""
    revisions = load_revisions()
    assert [m.revision for m in revisions] == ["20261012_090000", "20261014_153000"]


def test_upgrade_and_downgrade(tmp_path):
    """Test that the head schema matches the models and downgrades cleanly"""
    engine = create_engine(f"sqlite:///{tmp_path}/migrated.db")
    revisions = load_revisions()
    try:
        apply(engine, revisions, "upgrade")

        inspector = inspect(engine)
        assert {"files", "file_chunks", "payments"} <= set(inspector.get_table_names())
        assert "ix_files_payer_address" in {i["name"] for i in inspector.get_indexes("files")}
        assert "ix_payments_payer_address" in {i["name"] for i in inspector.get_indexes("payments")}

        apply(engine, list(reversed(revisions)), "downgrade")
        assert not {"files", "file_chunks", "payments"} & set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


@pytest.mark.asyncio
async def test_migrated_database_opens(tmp_path, settings_factory):
    """Test that the service accepts a database created by the revisions"""
    db_path = tmp_path / "migrated.db"
    engine = create_engine(f"sqlite:///{db_path}")
    apply(engine, load_revisions(), "upgrade")
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO files (file_id, file_name, file_hash, expiry, created_at, blob_certificate) "
                "VALUES ('doc', 'doc.txt', :hash, '2099-01-01 00:00:00.000000', "
                "'2024-01-01 00:00:00.000000', 'aa')"
            ),
            {"hash": "ab" * 32},
        )
    engine.dispose()

    database = DatabaseService(settings_factory(database_url=f"sqlite:///{db_path}"))
    database.initialize()
    try:
        record = await MetadataStore(database).get_file("doc")
        assert record.certificate == "aa"
        assert record.renewal_count == 0
    finally:
        database.close()
