"""The Alembic schema must match the models."""

import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import inspect

from brewledger.db.base import Base
from brewledger.db.session import create_db_engine

import brewledger.models  # noqa: F401  (register tables on Base.metadata)

MIGRATION = Path(__file__).resolve().parents[1] / "alembic" / "versions" / "001_inventory_engine_schema.py"


def load_migration():
    spec = importlib.util.spec_from_file_location("inventory_engine_schema", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def index_signature(engine):
    inspector = inspect(engine)
    return {
        table: sorted(
            (index["name"], bool(index["unique"]), tuple(index["column_names"]))
            for index in inspector.get_indexes(table)
        )
        for table in sorted(inspector.get_table_names())
        if table != "alembic_version"
    }


class TestInitialMigration:
    def test_matches_models(self, tmp_path):
        migrated = create_db_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
        with migrated.begin() as connection:
            context = MigrationContext.configure(connection)
            with Operations.context(context):
                load_migration().upgrade()

        created = create_db_engine(f"sqlite:///{tmp_path / 'created.db'}")
        Base.metadata.create_all(bind=created)

        assert index_signature(migrated) == index_signature(created)
        sku_index = next(
            i for i in inspect(migrated).get_indexes("ingredients") if i["name"] == "ix_ingredients_sku"
        )
        assert sku_index["unique"]

        migrated.dispose()
        created.dispose()
