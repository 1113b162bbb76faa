"""Database setup and configuration using SQLModel"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import event, func, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from blobkeeper.config import Settings
from blobkeeper.utils.logger import get_logger
from blobkeeper.models.stored_file import StoredFile, StoredChunk
from blobkeeper.models.payment import PaymentRecord

logger = get_logger(__name__)

# Optional columns added to the files table after its first release.
# name -> (SQL type, SQL default or None)
FILES_ADDITIVE_COLUMNS = {
    "is_chunked": ("BOOLEAN", "0"),
    "file_size": ("INTEGER", None),
    "chunk_size": ("INTEGER", None),
    "total_chunks": ("INTEGER", None),
    "is_complete": ("BOOLEAN", "1"),
    "blob_key": ("VARCHAR", None),
    "updated_at": ("DATETIME", None),
    "payment_status": ("VARCHAR", "'pending'"),
    "payer_address": ("VARCHAR", None),
    "payment_amount": ("VARCHAR", None),
    "payment_tx_hash": ("VARCHAR", None),
    "last_balance_check": ("DATETIME", None),
    "contract_balance": ("VARCHAR", None),
    "renewal_count": ("INTEGER", "0"),
    "last_renewed_at": ("DATETIME", None),
}

CRITICAL_TABLES = ["files", "file_chunks", "payments"]


def normalize_database_url(database_url: str) -> str:
    """
    Convert supported URL spellings to SQLAlchemy format and create the SQLite directory.

    Accepts ``file:./data/x.db``, ``sqlite:///./data/x.db``, ``sqlite:///data/x.db``,
    ``sqlite:////abs/x.db`` and in-memory URLs. Other dialects pass through untouched.
    """
    if database_url.startswith("file:"):
        database_url = "sqlite:///" + database_url[len("file:"):]

    if not database_url.startswith("sqlite"):
        return database_url

    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return "sqlite:///:memory:"

    path = database_url.replace("sqlite:///", "", 1)
    if path.startswith("./"):
        path = path[2:]

    db_dir = os.path.dirname(path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir, exist_ok=True)
        logger.debug(f"Created database directory: {db_dir}")

    return f"sqlite:///{path.replace(os.sep, '/')}"


class DatabaseService:
    """Database service owning the engine and its connection pool"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: Optional[Engine] = None
        self._closed = False

    @property
    def is_sqlite(self) -> bool:
        return self.engine is not None and self.engine.dialect.name == "sqlite"

    @property
    def sqlite_path(self) -> Optional[str]:
        """Filesystem path of the SQLite database, None for memory or other dialects"""
        if not self.is_sqlite:
            return None
        database = self.engine.url.database
        if not database or database == ":memory:":
            return None
        return database

    def initialize(self):
        """Initialize database connection, schema and migrations"""
        if self._closed:
            raise RuntimeError("Database service was closed and cannot be re-opened")
        if self.engine is not None:
            return

        try:
            database_url = normalize_database_url(self.settings.database_url)
            logger.debug(f"Connecting to database: {database_url.split('/')[-1]}")

            if database_url.startswith("sqlite"):
                self.engine = self._create_sqlite_engine(database_url)
            else:
                self.engine = create_engine(
                    database_url,
                    echo=False,
                    pool_pre_ping=True,
                    pool_size=self.settings.database_pool_size,
                    max_overflow=self.settings.database_max_overflow,
                    pool_recycle=3600,
                )

            SQLModel.metadata.create_all(self.engine)

            self._verify_database_integrity()
            self._migrate_files_table()
            self._normalize_payer_addresses()

            logger.debug("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            if self.engine is not None:
                self.engine.dispose()
                self.engine = None
            raise

    def _create_sqlite_engine(self, database_url: str) -> Engine:
        in_memory = database_url.endswith(":memory:")
        busy_timeout = self.settings.database_busy_timeout
        connect_args = {"check_same_thread": False, "timeout": busy_timeout}

        if in_memory:
            engine = create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=False,
            )
        else:
            engine = create_engine(
                database_url,
                connect_args=connect_args,
                echo=False,
                pool_pre_ping=True,
                pool_size=self.settings.database_pool_size,
                max_overflow=self.settings.database_max_overflow,
                pool_recycle=3600,
            )

        @event.listens_for(engine, "connect")
        def _configure_connection(dbapi_connection, connection_record):
            # The driver must not open transactions on its own; BEGIN is emitted below
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout * 1000)}")
            cursor.execute("PRAGMA temp_store=MEMORY")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_transaction(conn):
            mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
            conn.exec_driver_sql(f"BEGIN {mode}")

        return engine

    def _require_engine(self) -> Engine:
        if self._closed:
            raise RuntimeError("Database service is closed")
        if not self.engine:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self.engine

    def _migrate_files_table(self):
        """Add optional columns missing from an older files table"""
        engine = self._require_engine()

        existing_columns = {column["name"] for column in inspect(engine).get_columns("files")}
        missing = [name for name in FILES_ADDITIVE_COLUMNS if name not in existing_columns]
        if not missing:
            logger.debug("files table migration: all columns already exist")
            return

        with engine.begin() as conn:
            for column_name in missing:
                column_type, default_value = FILES_ADDITIVE_COLUMNS[column_name]
                alter_sql = f"ALTER TABLE files ADD COLUMN {column_name} {column_type}"
                if default_value is not None:
                    alter_sql += f" DEFAULT {default_value}"
                conn.execute(text(alter_sql))
                logger.info(f"Added column '{column_name}' to files table")
            conn.execute(text("CREATE INDEX IF NOT EXISTS ix_files_payer_address ON files (payer_address)"))

        # Post-migration validation
        columns_after = {column["name"] for column in inspect(engine).get_columns("files")}
        still_missing = [name for name in FILES_ADDITIVE_COLUMNS if name not in columns_after]
        if still_missing:
            raise RuntimeError(f"files table migration failed, columns still missing: {still_missing}")
        logger.info(f"Migration completed: added {len(missing)} column(s) to files table")

    def _normalize_payer_addresses(self):
        """Payer addresses are compared case-insensitively, so store them lower-cased"""
        engine = self._require_engine()
        with engine.begin() as conn:
            result = conn.execute(
                text(
                    "UPDATE files SET payer_address = lower(payer_address) "
                    "WHERE payer_address IS NOT NULL AND payer_address != lower(payer_address)"
                )
            )
            conn.execute(
                text(
                    "UPDATE payments SET payer_address = lower(payer_address) "
                    "WHERE payer_address IS NOT NULL AND payer_address != lower(payer_address)"
                )
            )
        if result.rowcount:
            logger.info(f"Normalized {result.rowcount} payer address(es) to lower case")

    def _verify_database_integrity(self):
        """Verify database integrity and structure"""
        engine = self._require_engine()

        existing_tables = set(inspect(engine).get_table_names())
        missing_tables = [table for table in CRITICAL_TABLES if table not in existing_tables]
        if missing_tables:
            raise RuntimeError(f"Database is missing tables: {missing_tables}")

        if not self.is_sqlite:
            return

        with engine.connect() as conn:
            integrity_status = conn.execute(text("PRAGMA integrity_check")).scalar()
            if integrity_status == "ok":
                logger.debug("Database integrity check passed")
            else:
                logger.warning(f"Database integrity check returned: {integrity_status}")

    def get_session(self) -> Session:
        """Get database session"""
        return Session(self._require_engine(), expire_on_commit=False)

    @contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[Session]:
        """
        Open a session inside one transaction, committed on exit and rolled back on error.

        Args:
            immediate: Take the write lock up front (SQLite ``BEGIN IMMEDIATE``).
                Callers on other dialects lock rows with ``SELECT ... FOR UPDATE``.
        """
        engine = self._require_engine()
        if immediate and self.is_sqlite:
            engine = engine.execution_options(sqlite_begin="IMMEDIATE")

        with Session(engine, expire_on_commit=False) as session:
            with session.begin():
                yield session

    async def health_check(self) -> bool:
        """Check database health"""
        try:
            with self.get_session() as session:
                session.exec(select(1)).first()
                return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        with self.get_session() as session:
            total_files = session.exec(select(func.count()).select_from(StoredFile)).one()
            chunked_files = session.exec(
                select(func.count()).select_from(StoredFile).where(StoredFile.is_chunked == True)  # noqa: E712
            ).one()
            incomplete_files = session.exec(
                select(func.count()).select_from(StoredFile).where(StoredFile.is_complete == False)  # noqa: E712
            ).one()
            total_chunks = session.exec(select(func.count()).select_from(StoredChunk)).one()
            total_payments = session.exec(select(func.count()).select_from(PaymentRecord)).one()

        return {
            "database": {
                "total_files": total_files,
                "chunked_files": chunked_files,
                "incomplete_uploads": incomplete_files,
                "total_chunks": total_chunks,
                "total_payments": total_payments,
            }
        }

    async def vacuum_and_analyze(self):
        """Run VACUUM and ANALYZE to optimize database"""
        engine = self._require_engine()
        if not self.is_sqlite:
            logger.debug("Skipping VACUUM on non-SQLite database")
            return

        # VACUUM cannot run inside a transaction, so use the raw driver connection
        raw_connection = engine.raw_connection()
        try:
            cursor = raw_connection.cursor()
            cursor.execute("VACUUM")
            cursor.execute("ANALYZE")
            cursor.close()
        finally:
            raw_connection.close()
        logger.debug("Database VACUUM and ANALYZE completed")

    def close(self):
        """Close database connection"""
        if self.engine:
            self.engine.dispose()
            self.engine = None
            logger.debug("Database connection closed")
        self._closed = True
