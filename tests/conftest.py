import pytest

from gtfsdb.data.store_broker import open_store
from gtfsdb.errors import ExtensionUnavailableError
from gtfsdb.ingest.schema import initialize_store


@pytest.fixture
def store():
    """In-memory store with the checkpoint table."""
    store = open_store()
    initialize_store(store)
    yield store
    store.close()


@pytest.fixture
def spatial_store():
    """In-memory SpatiaLite store; skipped when the extension cannot be loaded."""
    try:
        store = open_store(spatial=True)
    except ExtensionUnavailableError as e:
        pytest.skip(f"SpatiaLite not available: {e}")
    initialize_store(store)
    yield store
    store.close()
