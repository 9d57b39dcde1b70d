import os

# Settings are read at import time; use a shared secret instead of key files.
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("JWT_SECRET", "test-secret-not-for-production")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest  # noqa: E402

from tests.factories import make_code  # noqa: E402


@pytest.fixture
def code():
    return make_code()
