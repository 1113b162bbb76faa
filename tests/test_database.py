"""Unit tests for the database service"""

import sqlite3
from datetime import datetime

import pytest
from sqlalchemy import inspect

from blobkeeper.database import FILES_ADDITIVE_COLUMNS, DatabaseService, normalize_database_url
from blobkeeper.models.records import PaymentStatus, SingleBlobFile
from blobkeeper.services.metadata_store import MetadataStore


class TestNormalizeDatabaseUrl:
    """Test database URL spellings"""

    def test_file_url(self, tmp_path):
        """Test file: URLs and directory creation"""
        target = tmp_path / "nested" / "x.db"
        assert normalize_database_url(f"file:{target}") == f"sqlite:///{target}"
        assert target.parent.exists()

    def test_memory_urls(self):
        """Test in-memory spellings"""
        assert normalize_database_url("sqlite://") == "sqlite:///:memory:"
        assert normalize_database_url("sqlite:///:memory:") == "sqlite:///:memory:"

    def test_other_dialects_pass_through(self):
        """Test that non-SQLite URLs are left alone"""
        url = "postgresql://user:pass@db/blobkeeper"
        assert normalize_database_url(url) == url


class TestDatabaseService:
    """Test database lifecycle"""

    def test_initialize_creates_tables(self, database):
        """Test that initialization creates every table"""
        tables = set(inspect(database.engine).get_table_names())
        assert {"files", "file_chunks", "payments"} <= tables

    def test_wal_mode_for_file_databases(self, database):
        """Test that file databases use the write-ahead log"""
        with database.engine.connect() as conn:
            mode = conn.exec_driver_sql("PRAGMA journal_mode").scalar()
        assert mode.lower() == "wal"

    def test_initialize_is_idempotent(self, database):
        """Test that a second initialize keeps the engine"""
        engine = database.engine
        database.initialize()
        assert database.engine is engine

    def test_closed_service_cannot_reopen(self, settings):
        """Test that a closed service refuses to initialize again"""
        service = DatabaseService(settings)
        service.initialize()
        service.close()

        with pytest.raises(RuntimeError):
            service.initialize()
        with pytest.raises(RuntimeError):
            service.get_session()

    def test_in_memory_database(self, settings_factory):
        """Test that in-memory databases work on a single shared connection"""
        service = DatabaseService(settings_factory(database_url="sqlite://"))
        service.initialize()
        try:
            assert service.sqlite_path is None
            assert set(inspect(service.engine).get_table_names()) >= {"files", "file_chunks", "payments"}
        finally:
            service.close()

    @pytest.mark.asyncio
    async def test_health_check(self, database):
        """Test health check on an open database"""
        assert await database.health_check() is True

    @pytest.mark.asyncio
    async def test_get_stats_empty(self, database):
        """Test statistics of an empty database"""
        stats = await database.get_stats()
        assert stats["database"] == {
            "total_files": 0,
            "chunked_files": 0,
            "incomplete_uploads": 0,
            "total_chunks": 0,
            "total_payments": 0,
        }

    @pytest.mark.asyncio
    async def test_vacuum_and_analyze(self, database):
        """Test that maintenance runs outside a transaction"""
        await database.vacuum_and_analyze()
        assert await database.health_check() is True


class TestLegacyMigration:
    """Test additive migration of an older files table"""

    @staticmethod
    def _create_legacy_database(path):
        conn = sqlite3.connect(path)
        conn.execute(
            "CREATE TABLE files ("
            "file_id VARCHAR PRIMARY KEY, "
            "file_name VARCHAR NOT NULL, "
            "file_hash VARCHAR NOT NULL, "
            "blob_certificate VARCHAR, "
            "expiry DATETIME NOT NULL, "
            "created_at DATETIME NOT NULL, "
            "payer_address VARCHAR)"
        )
        conn.execute(
            "INSERT INTO files VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                "legacy-1",
                "old.txt",
                "ab" * 32,
                "cd" * 40,
                "2099-01-01 00:00:00.000000",
                "2024-01-01 00:00:00.000000",
                "0xABCDEF0000000000000000000000000000000001",
            ),
        )
        conn.commit()
        conn.close()

    @pytest.mark.asyncio
    async def test_missing_columns_are_added(self, tmp_path, settings_factory):
        """Test that old rows load with defaults for the added columns"""
        db_path = tmp_path / "legacy.db"
        self._create_legacy_database(str(db_path))

        service = DatabaseService(settings_factory(database_url=f"sqlite:///{db_path}"))
        service.initialize()
        try:
            columns = {column["name"] for column in inspect(service.engine).get_columns("files")}
            assert set(FILES_ADDITIVE_COLUMNS) <= columns

            record = await MetadataStore(service).get_file("legacy-1")
            assert isinstance(record, SingleBlobFile)
            assert record.certificate == "cd" * 40
            assert record.expiry == datetime(2099, 1, 1)
            assert record.renewal_count == 0
            assert record.payment.status == PaymentStatus.PENDING
            assert record.payment.payer_address == "0xabcdef0000000000000000000000000000000001"
        finally:
            service.close()

    def test_migration_is_repeatable(self, tmp_path, settings_factory):
        """Test that a migrated database opens again without changes"""
        db_path = tmp_path / "legacy.db"
        self._create_legacy_database(str(db_path))
        settings = settings_factory(database_url=f"sqlite:///{db_path}")

        first = DatabaseService(settings)
        first.initialize()
        first.close()

        second = DatabaseService(settings)
        second.initialize()
        try:
            indexes = {index["name"] for index in inspect(second.engine).get_indexes("files")}
            assert "ix_files_payer_address" in indexes
        finally:
            second.close()


class TestStoredTimestamps:
    """Test the timestamp helper used for stored values"""

    def test_utcnow_is_naive_utc(self):
        """Test that stored times carry no tzinfo and track UTC"""
        from datetime import timezone

        from blobkeeper.utils.time_utils import utcnow

        now = utcnow()
        assert now.tzinfo is None
        assert abs((datetime.now(timezone.utc).replace(tzinfo=None) - now).total_seconds()) < 5
