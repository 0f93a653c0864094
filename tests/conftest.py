import io
import sys
from pathlib import Path

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parents[1]
PROJECT_PARENT = ROOT.parent

for path in (ROOT, PROJECT_PARENT):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from rental_sync.common.db import dispose_engines, ensure_schema  # noqa: E402
from rental_sync.common.json_logger import JsonLogger  # noqa: E402
from rental_sync.config import Config  # noqa: E402

SECRET_KEY = "unit-test-secret"


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO) -> JsonLogger:
    return JsonLogger(stream=log_stream)


@pytest_asyncio.fixture
async def database_url(tmp_path: Path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'rental_sync.db'}"
    await ensure_schema(url)
    yield url
    await dispose_engines()


@pytest.fixture
def make_config(tmp_path: Path):
    def _make(database_url: str = "sqlite+aiosqlite:///:memory:", **overrides) -> Config:
        values = {
            "database_url": database_url,
            "secret_key": SECRET_KEY,
            "run_env": "test",
            "pipeline_timezone": "Asia/Shanghai",
            "logs_dir": tmp_path / "logs",
            "profiles_dir": tmp_path / "profiles",
            "app_base_url": "https://erp.example.com",
        }
        values.update(overrides)
        return Config(**values)

    return _make
