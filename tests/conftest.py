import os
import tempfile

# Must run before clarita.database is imported
_db_dir = tempfile.mkdtemp(prefix="clarita-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"

import pytest  # noqa: E402

from fakes import FakeAuthProvider, FakeGenerator  # noqa: E402


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fake_auth():
    return FakeAuthProvider()
