"""Pytest overall configuration file for fixtures"""

import pytest
from resourcestore.filesystemfilestore import FilesystemFileStore
from resourcestore.identifier import Identifier
from resourcestore.metastore import MetaStoreFactory


def pytest_addoption(parser):
    """Run slow tests only when a flag is set on pytest."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests",
    )


@pytest.fixture(name="props")
def init_props(tmp_path):
    """Properties to initialize a FilesystemFileStore."""
    directory = tmp_path / "resourcestore"
    directory.mkdir(parents=True)
    # Note, resources generated via tests are placed in a temporary folder
    properties = {
        "store_path": directory.as_posix(),
        "store_shard_depth": 4,
        "store_algorithm": "md5",
        "store_buffer_size": 1024,
        "store_quota": None,
        "store_cache_sizes": False,
        "store_locking": {"min_sleep": 0.001, "sleep_inc": 0.001, "timeout": 5},
    }
    return properties


@pytest.fixture(name="store")
def init_store(props):
    """Create FilesystemFileStore instance for all tests."""
    store = FilesystemFileStore(props)
    return store


@pytest.fixture(name="test_data")
def init_test_data():
    """Shared test harness data: content and its checksums."""
    return {
        "content": b"The quick brown fox jumps over the lazy dog",
        "md5": "9e107d9d372bb6826bd81d3542a419d6",
        "sha256": "d7a8fbb307d7809469ca9abcb0082e4f8d5651e46d3cdb762d02d0bf37c9e592",
        "empty_md5": "d41d8cd98f00b204e9800998ecf8427e",
    }


@pytest.fixture(name="identifiers")
def init_identifiers():
    """Twenty freshly generated identifiers, in creation order."""
    return [Identifier.generate() for _ in range(20)]


@pytest.fixture(name="metastore", params=["memory", "sql", "triple"])
def init_metastore(request, tmp_path):
    """Every MetaStore backend, so one behavioural suite covers all of them."""
    connections = {
        "memory": None,
        "sql": {"dialect": "sqlite", "database": (tmp_path / "meta.db").as_posix()},
        "triple": {"path": (tmp_path / "triples.yaml").as_posix()},
    }
    properties = {
        "metastore_backend": request.param,
        "metastore_connection": connections[request.param],
    }
    metastore = MetaStoreFactory.get_metastore(properties)
    yield metastore
    if request.param == "sql":
        metastore.close()
