"""
Shared fixtures for sync tests.
"""

import httpx
import pytest

from fk_sync.api import ApiClient
from fk_sync.database import Database
from fk_sync.sync import SyncContext

from .fakes import FakeGnuPG
from .mock_server import FakeApiState, create_fluidkeys_app


@pytest.fixture
def fluidkeys_dir(tmp_path):
    return tmp_path / "fluidkeys"


@pytest.fixture
def gpg():
    return FakeGnuPG()


@pytest.fixture
def api_state():
    return FakeApiState()


@pytest.fixture
async def api(api_state):
    client = ApiClient(
        base_url="http://fluidkeys.test/v1/",
        transport=httpx.ASGITransport(app=create_fluidkeys_app(api_state)),
    )
    await client.open()
    yield client
    await client.close()


@pytest.fixture
def db(fluidkeys_dir):
    return Database(fluidkeys_dir)


@pytest.fixture
def ctx(fluidkeys_dir, db, api, gpg):
    return SyncContext(
        fluidkeys_dir=fluidkeys_dir,
        db=db,
        api=api,
        engine=gpg,
        keyring=gpg,
    )
