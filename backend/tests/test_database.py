"""
Tests for database functionality.

Tests Alembic migrations, model definitions, and foreign key behavior.
"""

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text

from conftest import BACKEND_DIR


def _alembic_config(db_url: str) -> Config:
    cfg = Config(str(BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(BACKEND_DIR / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


class TestAlembicMigrations:
    """Test Alembic migration functionality."""

    def test_migrations_create_all_tables(self, engine):
        """Verify all expected tables are created by migrations."""
        tables = set(inspect(engine).get_table_names())

        expected_tables = {
            "api_keys",
            "chat_models",
            "conversations",
            "history_records",
            "alembic_version",
        }

        assert expected_tables.issubset(tables), f"Missing tables: {expected_tables - tables}"

    def test_api_keys_table_has_correct_columns(self, engine):
        columns = {col["name"] for col in inspect(engine).get_columns("api_keys")}

        expected_columns = {
            "id",
            "platform",
            "purpose",
            "name",
            "value",
            "api_url",
            "proxy_url",
            "enabled",
            "last_used_at",
            "created_at",
            "updated_at",
        }

        assert expected_columns.issubset(columns), (
            f"Missing columns in api_keys: {expected_columns - columns}"
        )

    def test_history_records_table_has_correct_columns(self, engine):
        columns = {col["name"] for col in inspect(engine).get_columns("history_records")}

        expected_columns = {
            "id",
            "conversation_id",
            "model",
            "prompt",
            "content",
            "status",
            "prompt_tokens",
            "completion_tokens",
            "total_tokens",
            "prompt_at",
            "reply_at",
        }

        assert expected_columns.issubset(columns), (
            f"Missing columns in history_records: {expected_columns - columns}"
        )

    def test_history_cascades_from_conversations(self, engine):
        (foreign_key,) = inspect(engine).get_foreign_keys("history_records")

        assert foreign_key["referred_table"] == "conversations"
        assert foreign_key["options"].get("ondelete") == "CASCADE"

    def test_downgrade_removes_relay_tables(self, tmp_path):
        db_url = f"sqlite:///{tmp_path / 'downgrade.db'}"
        cfg = _alembic_config(db_url)
        command.upgrade(cfg, "head")
        command.downgrade(cfg, "base")

        engine = create_engine(db_url)
        try:
            tables = set(inspect(engine).get_table_names())
        finally:
            engine.dispose()

        assert tables <= {"alembic_version"}


class TestForeignKeys:
    """SQLite must enforce the history foreign key."""

    def test_foreign_keys_enabled(self, engine):
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
