import sys
from pathlib import Path

import pytest
from loguru import logger


# Ensure the repository root is importable as a package root (so `import turnstream` works).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def log_records():
    """Capture loguru records emitted during a test."""
    records = []
    sink_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(sink_id)
