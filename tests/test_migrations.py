from argparse import Namespace
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from database import Base
import models  # noqa: F401

ROOT = Path(__file__).resolve().parents[1]


def _config(url: str) -> Config:
    # no ini file, so the test process keeps its logging setup
    cfg = Config(cmd_opts=Namespace(x=[f"database_url={url}"]))
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    return cfg


def test_upgrade_creates_every_table_and_downgrade_drops_them(tmp_path):
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    cfg = _config(url)

    command.upgrade(cfg, "head")
    engine = create_engine(url)
    try:
        tables = set(inspect(engine).get_table_names())
        assert set(Base.metadata.tables) <= tables

        command.downgrade(cfg, "base")
        assert set(inspect(engine).get_table_names()) <= {"alembic_version"}
    finally:
        engine.dispose()
