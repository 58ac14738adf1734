import sys
from pathlib import Path

import pytest


# Ensure deploy-receiver is on sys.path for tests that import modules directly.
DEPLOY_RECEIVER_DIR = Path(__file__).resolve().parents[1]
if str(DEPLOY_RECEIVER_DIR) not in sys.path:
    sys.path.insert(0, str(DEPLOY_RECEIVER_DIR))


@pytest.fixture
def anyio_backend():
    # The process runner is built on asyncio subprocesses.
    return "asyncio"
