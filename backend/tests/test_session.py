"""Engine configuration tests."""

from factory_app.core.config import Settings
from factory_app.db.session import build_engine, engine_options


def _settings(**overrides) -> Settings:
    return Settings(secret_key="x" * 32, **overrides)


class TestEngineOptions:
    def test_sqlite_shares_connections_across_threads(self):
        options = engine_options(_settings(database_url="sqlite:///./data/factory.db"))
        assert options["connect_args"] == {"check_same_thread": False}
        assert "pool_size" not in options
        assert options["pool_pre_ping"] is True

    def test_server_database_pool_comes_from_settings(self):
        config = _settings(
            database_url="postgresql://factory:secret@db/factory",
            db_pool_size=3,
            db_max_overflow=7,
            db_pool_recycle=600,
        )
        options = engine_options(config)
        assert options["pool_size"] == 3
        assert options["max_overflow"] == 7
        assert options["pool_recycle"] == 600
        assert "connect_args" not in options

    def test_sqlite_engine_enforces_foreign_keys(self, tmp_path):
        engine = build_engine(_settings(database_url=f"sqlite:///{tmp_path / 'fk.db'}"))
        try:
            with engine.connect() as conn:
                assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
        finally:
            engine.dispose()
