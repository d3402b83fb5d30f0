"""E2E test configuration and fixtures.

These fixtures run the full application with:
- The scripted extractor (APP_TESTING_MOCK_EXTRACTOR=true), no yt-dlp needed
- A temporary scratch directory
- Quiet logging
"""

import os
import tempfile
import time
from itertools import count
from typing import Any, Callable, Dict, Generator, Iterator

import pytest
from fastapi.testclient import TestClient

# Set at import time so they are present before any app module reads them
os.environ["APP_TESTING_MOCK_EXTRACTOR"] = "true"
os.environ["APP_LOGGING_LEVEL"] = "WARNING"

_client_numbers: Iterator[int] = count(1)


@pytest.fixture(scope="module")
def scratch_dir() -> Generator[str, None, None]:
    """Create a temporary scratch directory for downloads."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(scope="module")
def e2e_env(scratch_dir: str) -> Generator[None, None, None]:
    """Set up environment variables for E2E testing."""
    original_env: Dict[str, Any] = {}
    env_vars = {
        "APP_TESTING_MOCK_EXTRACTOR": "true",
        "APP_LOGGING_LEVEL": "WARNING",
        "APP_DOWNLOADS_SCRATCH_DIR": scratch_dir,
        "APP_CONFIG_PATH": os.path.join(scratch_dir, "absent.yaml"),
    }

    for key, value in env_vars.items():
        original_env[key] = os.environ.get(key)
        os.environ[key] = value

    yield

    for key, original_value in original_env.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value


@pytest.fixture(scope="module")
def e2e_client(e2e_env: None) -> Generator[TestClient, None, None]:
    """Create a test client running the app lifespan (registry and sweeper)."""
    from mediadrop.main import create_app

    app = create_app()

    with TestClient(app) as client:
        yield client


@pytest.fixture
def client_headers() -> Dict[str, str]:
    """A fresh client address, so each test starts with a full rate-limit allowance."""
    return {"X-Forwarded-For": f"198.51.100.{next(_client_numbers)}"}


@pytest.fixture
def video_url() -> str:
    return "https://www.youtube.com/watch/Never_Gonna"


@pytest.fixture
def wait_for_terminal(e2e_client: TestClient) -> Callable[..., Dict[str, Any]]:
    """Poll the status endpoint until the job completes or fails."""

    def wait(token: str, headers: Dict[str, str], attempts: int = 50) -> Dict[str, Any]:
        for _ in range(attempts):
            response = e2e_client.get(f"/api/status/{token}", headers=headers)
            assert response.status_code == 200
            data = response.json()
            if data["status"] in ("completed", "error"):
                return data
            time.sleep(0.05)
        pytest.fail(f"Job {token} did not finish in time")

    return wait
