import logging

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from config import settings


logger = logging.getLogger(__name__)

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False},
    echo=False,
)


# Enable WAL mode for better concurrent read performance
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


_SCOPE_COLUMNS = ("id_all", "id_type", "id_category", "id_item", "id_occ")


def run_startup_migrations(bind=None) -> None:
    """Apply lightweight schema fixes for existing SQLite databases."""
    bind = bind or engine
    inspector = inspect(bind)

    def _table_columns(table_name: str) -> set[str]:
        try:
            return {col["name"] for col in inspector.get_columns(table_name)}
        except Exception:
            return set()

    occ_columns = _table_columns("tbl_occs")
    config_columns = _table_columns("tbl_configs")
    if not occ_columns and not config_columns:
        # Tables may not exist yet on first boot.
        return

    alter_statements: list[str] = []
    if occ_columns and "completed_date" not in occ_columns:
        alter_statements.append("ALTER TABLE tbl_occs ADD COLUMN completed_date INTEGER")

    with bind.begin() as conn:
        for stmt in alter_statements:
            conn.execute(text(stmt))

        if config_columns:
            # NULLs never collide in the composite UNIQUE constraint, so older
            # databases can hold several rows for one scope. Keep the newest.
            removed = 0
            for column in _SCOPE_COLUMNS:
                result = conn.execute(text(
                    f"""
                    DELETE FROM tbl_configs
                    WHERE {column} IS NOT NULL
                      AND rowid NOT IN (
                        SELECT MAX(rowid) FROM tbl_configs
                        WHERE {column} IS NOT NULL
                        GROUP BY {column}
                      )
                    """
                ))
                removed += int(result.rowcount or 0)
                conn.execute(text(
                    f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_configs_{column}
                    ON tbl_configs ({column}) WHERE {column} IS NOT NULL
                    """
                ))
            if removed:
                logger.warning("Removed %s duplicate config entries during startup migration", removed)
