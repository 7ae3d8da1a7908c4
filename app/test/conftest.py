import asyncio
import os
import tempfile

# Before any app module is imported: logs and the default engine go to a temp dir
_TMP = tempfile.mkdtemp(prefix="pair-guardian-test-")
os.environ["LOG_DIR"] = _TMP
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP, 'default.db')}"
os.environ["SMTP_HOST"] = ""
os.environ["SWEEP_ENABLED"] = "false"

import pytest
from sqlalchemy.pool import NullPool

import models  # noqa: F401  (registers the tables)
from database import init_models, make_session_factory


@pytest.fixture
def session_factory(tmp_path):
    """Session factory on a fresh SQLite file; NullPool so each asyncio.run() gets new connections."""
    eng, factory = make_session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'store.db'}", poolclass=NullPool
    )
    asyncio.run(init_models(eng))
    yield factory
    asyncio.run(eng.dispose())
