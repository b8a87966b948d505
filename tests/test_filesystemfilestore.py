"""Test module for FilesystemFileStore core, utility and supporting methods"""

import io
import os
import time
from threading import Thread
import pytest
from resourcestore.filesystemfilestore import FilesystemFileStore
from resourcestore.identifier import Identifier
from resourcestore.resourcestore_config import (
    BUFFER_SIZE,
    SHARD_DEPTH,
    SIZE_CACHE_FILENAME,
    SPOOL_DIRNAME,
    STORE_CONFIG_FILENAME,
)
from resourcestore.resourcestore_exceptions import ConfigError, QuotaExceeded

# pylint: disable=W0212

# Define a mark to be used to label slow tests
slow_test = pytest.mark.skipif(
    "not config.getoption('--run-slow')",
    reason="Only run when --run-slow is given",
)

IDENTIFIER = Identifier.parse("1ef03c5d-93a2-6b8e-b5ad-cb306488e280")


def test_init_default_values(tmp_path):
    """FilesystemFileStore initialized with only a path uses default values."""
    store = FilesystemFileStore({"store_path": (tmp_path / "store").as_posix()})
    assert store.shard_depth == SHARD_DEPTH
    assert store.buffer_size == BUFFER_SIZE
    assert store.algorithm == "md5"
    assert store.quota is None
    assert store.cache_sizes is False


def test_init_writes_configuration(store):
    """filestore.yaml and the spool directory are created on first use."""
    assert os.path.exists(os.path.join(store.root, STORE_CONFIG_FILENAME))
    assert os.path.isdir(os.path.join(store.root, SPOOL_DIRNAME))


def test_init_reopen_same_properties(props, store):
    """A store can be reopened with the same properties."""
    store.store(IDENTIFIER, b"content")
    reopened = FilesystemFileStore(props)
    assert reopened.fetch(IDENTIFIER) == b"content"
    assert reopened.total_size() == 7


def test_init_reopen_conflicting_shard_depth(props, store):
    """Reopening with a different shard depth raises ConfigError."""
    assert store.shard_depth == 4
    props["store_shard_depth"] = 2
    with pytest.raises(ConfigError):
        FilesystemFileStore(props)


def test_init_reopen_conflicting_algorithm(props, store):
    """Reopening with a different algorithm raises ConfigError."""
    assert store.algorithm == "md5"
    props["store_algorithm"] = "sha256"
    with pytest.raises(ConfigError):
        FilesystemFileStore(props)


def test_init_existing_content_without_config(props):
    """A store path holding shard directories but no filestore.yaml is refused."""
    os.makedirs(os.path.join(props["store_path"], "1e", "f0"))
    with pytest.raises(ConfigError):
        FilesystemFileStore(props)


def test_init_missing_properties():
    """Initializing without properties raises ConfigError."""
    with pytest.raises(ConfigError):
        FilesystemFileStore(None)
    with pytest.raises(ConfigError):
        FilesystemFileStore({"store_shard_depth": 4})


@pytest.mark.parametrize(
    "key, value",
    [
        ("store_shard_depth", 3),
        ("store_shard_depth", "deep"),
        ("store_algorithm", "crc32"),
        ("store_buffer_size", 0),
        ("store_quota", -1),
        ("store_locking", {"unknown": 1}),
    ],
)
def test_init_invalid_properties(props, key, value):
    """Invalid property values raise ConfigError."""
    props[key] = value
    with pytest.raises(ConfigError):
        FilesystemFileStore(props)


@pytest.mark.parametrize(
    "depth, expected",
    [
        (0, []),
        (1, ["1ef03c5d"]),
        (2, ["1ef0", "3c5d"]),
        (4, ["1e", "f0", "3c", "5d"]),
        (8, ["1", "e", "f", "0", "3", "c", "5", "d"]),
    ],
)
def test_build_path(props, depth, expected):
    """The leaf path nests the first 8 hex characters in `depth` equal groups."""
    props["store_shard_depth"] = depth
    store = FilesystemFileStore(props)
    expected_path = os.path.join(store.root, *expected, str(IDENTIFIER))
    assert store._build_path(IDENTIFIER) == expected_path
    store.store(IDENTIFIER, b"sharded")
    assert os.path.isfile(expected_path)


def test_store_returns_checksum(store, test_data):
    """store returns the md5 hex digest of the content."""
    identifier = Identifier.generate()
    assert store.store(identifier, test_data["content"]) == test_data["md5"]


def test_store_fetch_round_trip(store, test_data):
    """Stored content is fetched back unchanged with the right size."""
    identifier = Identifier.generate()
    store.store(identifier, test_data["content"])
    assert store.fetch(identifier) == test_data["content"]
    assert store.size(identifier) == len(test_data["content"])
    assert store.has(identifier)


def test_store_empty_content(store, test_data):
    """Empty content is stored as an empty file."""
    identifier = Identifier.generate()
    assert store.store(identifier, b"") == test_data["empty_md5"]
    assert store.fetch(identifier) == b""
    assert store.size(identifier) == 0
    assert store.has(identifier)


def test_store_stream_larger_than_buffer(store):
    """Content spanning many buffered chunks is stored intact."""
    identifier = Identifier.generate()
    content = os.urandom(store.buffer_size * 5 + 17)
    store.store_stream(identifier, io.BytesIO(content))
    assert store.fetch(identifier) == content


def test_store_stream_from_path(store, tmp_path, test_data):
    """Content can be stored from a file path."""
    path = tmp_path / "fox.txt"
    path.write_bytes(test_data["content"])
    identifier = Identifier.generate()
    assert store.store_stream(identifier, path.as_posix()) == test_data["md5"]
    assert store.fetch(identifier) == test_data["content"]


def test_store_accepts_string_identifier(store, test_data):
    """Identifiers can be given in canonical string form, in either case."""
    store.store(str(IDENTIFIER).upper(), test_data["content"])
    assert store.fetch(str(IDENTIFIER)) == test_data["content"]
    assert store.has(IDENTIFIER)


def test_store_overwrite(store):
    """Storing again replaces the content and adjusts the total size."""
    store.store(IDENTIFIER, b"a" * 100)
    store.store(IDENTIFIER, b"b" * 30)
    assert store.fetch(IDENTIFIER) == b"b" * 30
    assert store.total_size() == 30
    assert store.count() == 1


def test_store_leaves_no_spool_files(store):
    """The spool directory is empty after a successful write."""
    store.store(Identifier.generate(), b"content")
    assert os.listdir(store.spool) == []


def test_fetch_stream(store, test_data):
    """fetch_stream returns an open binary stream."""
    store.store(IDENTIFIER, test_data["content"])
    with store.fetch_stream(IDENTIFIER) as stream:
        assert stream.read() == test_data["content"]


def test_fetch_absent(store):
    """Unknown identifiers yield None/False, not errors."""
    identifier = Identifier.generate()
    assert store.fetch(identifier) is None
    assert store.fetch_stream(identifier) is None
    assert store.size(identifier) is None
    assert not store.has(identifier)


def test_delete(store, test_data):
    """delete removes the file and decrements the total size."""
    identifier = Identifier.generate()
    store.store(identifier, test_data["content"])
    assert store.delete(identifier)
    assert store.fetch(identifier) is None
    assert not store.has(identifier)
    assert store.total_size() == 0


def test_delete_absent(store):
    """Deleting an unknown identifier returns False."""
    assert store.delete(Identifier.generate()) is False


def test_total_size_tracks_stores_and_deletes(store):
    """The total size always equals the sum of the stored entries."""
    identifiers = [Identifier.generate() for _ in range(6)]
    for position, identifier in enumerate(identifiers):
        store.store(identifier, b"x" * (position * 10))
    store.delete(identifiers[2])
    store.store(identifiers[3], b"y" * 5)
    expected = sum(store.size(identifier) or 0 for identifier in identifiers)
    assert store.total_size() == expected
    assert store.count() == 6 - 1


def test_quota_exceeded(props):
    """quota=2048: 1024 bytes succeed, a further 1025 bytes raise QuotaExceeded."""
    props["store_quota"] = 2048
    store = FilesystemFileStore(props)
    first = Identifier.generate()
    store.store(first, b"a" * 1024)
    assert store.total_size() == 1024

    second = Identifier.generate()
    with pytest.raises(QuotaExceeded):
        store.store(second, b"b" * 1025)
    assert store.total_size() == 1024
    assert not store.has(second)
    assert os.listdir(store.spool) == []


def test_quota_counts_replaced_entry(props):
    """An overwrite may reuse the space of the entry it replaces."""
    props["store_quota"] = 1024
    store = FilesystemFileStore(props)
    store.store(IDENTIFIER, b"a" * 1000)
    store.store(IDENTIFIER, b"b" * 1024)
    assert store.total_size() == 1024


def test_quota_failure_keeps_previous_content(props):
    """A rejected overwrite leaves the previous content in place."""
    props["store_quota"] = 100
    store = FilesystemFileStore(props)
    store.store(IDENTIFIER, b"a" * 50)
    with pytest.raises(QuotaExceeded):
        store.store(IDENTIFIER, b"b" * 101)
    assert store.fetch(IDENTIFIER) == b"a" * 50
    assert store.total_size() == 50


def test_failed_stream_cleans_spool(store):
    """An I/O error while reading the source propagates and removes the spool
    file."""

    class BrokenStream(io.RawIOBase):
        """Raises after the first read."""

        def __init__(self):
            super().__init__()
            self.reads = 0

        def readable(self):
            return True

        def read(self, size=-1):
            self.reads += 1
            if self.reads > 1:
                raise OSError("connection reset")
            return b"partial"

    identifier = Identifier.generate()
    with pytest.raises(OSError):
        store.store_stream(identifier, BrokenStream())
    assert not store.has(identifier)
    assert store.total_size() == 0
    assert os.listdir(store.spool) == []


def test_size_cache_written(props):
    """With size caching enabled each top-level shard holds a size cache file."""
    props["store_cache_sizes"] = True
    store = FilesystemFileStore(props)
    store.store(IDENTIFIER, b"a" * 10)
    size_cache = os.path.join(store.root, "1e", SIZE_CACHE_FILENAME)
    with open(size_cache, "r", encoding="utf-8") as size_file:
        assert size_file.read() == "10"
    store.delete(IDENTIFIER)
    with open(size_cache, "r", encoding="utf-8") as size_file:
        assert size_file.read() == "0"


def test_size_cache_flat_store(props):
    """A flat store keeps its size cache in the store root."""
    props["store_cache_sizes"] = True
    props["store_shard_depth"] = 0
    store = FilesystemFileStore(props)
    store.store(IDENTIFIER, b"a" * 12)
    with open(
        os.path.join(store.root, SIZE_CACHE_FILENAME), "r", encoding="utf-8"
    ) as size_file:
        assert size_file.read() == "12"
    assert store.count() == 1


def test_size_cache_used_on_startup(props):
    """On startup the total is read from the cache files instead of the tree."""
    props["store_cache_sizes"] = True
    store = FilesystemFileStore(props)
    store.store(IDENTIFIER, b"a" * 10)
    size_cache = os.path.join(store.root, "1e", SIZE_CACHE_FILENAME)
    with open(size_cache, "w", encoding="utf-8") as size_file:
        size_file.write("999")
    assert FilesystemFileStore(props).total_size() == 999


def test_size_cache_built_by_scan(props):
    """Enabling caching on an existing store scans it once and writes the caches."""
    store = FilesystemFileStore(props)
    first = Identifier.parse("1ef03c5d-0000-6000-8000-000000000001")
    second = Identifier.parse("2ef03c5d-0000-6000-8000-000000000002")
    store.store(first, b"a" * 3)
    store.store(second, b"b" * 4)
    assert not os.path.exists(os.path.join(store.root, "1e", SIZE_CACHE_FILENAME))

    props["store_cache_sizes"] = True
    cached = FilesystemFileStore(props)
    assert cached.total_size() == 7
    for shard, size in (("1e", "3"), ("2e", "4")):
        with open(
            os.path.join(cached.root, shard, SIZE_CACHE_FILENAME), "r", encoding="utf-8"
        ) as size_file:
            assert size_file.read() == size


def test_size_cache_removed_when_disabled(props):
    """Stale size cache files are removed when caching is turned off."""
    props["store_cache_sizes"] = True
    store = FilesystemFileStore(props)
    store.store(IDENTIFIER, b"a" * 10)
    size_cache = os.path.join(store.root, "1e", SIZE_CACHE_FILENAME)
    assert os.path.exists(size_cache)

    props["store_cache_sizes"] = False
    uncached = FilesystemFileStore(props)
    assert not os.path.exists(size_cache)
    assert uncached.total_size() == 10


def test_startup_scan_ignores_spool_and_locks(props, store):
    """Files in the spool directory and lock markers are not counted."""
    store.store(IDENTIFIER, b"a" * 10)
    with open(os.path.join(store.spool, "spool-leftover"), "wb") as spool_file:
        spool_file.write(b"z" * 100)
    lock_marker = store._build_path(Identifier.generate()) + ".lock"
    os.makedirs(os.path.dirname(lock_marker), exist_ok=True)
    with open(lock_marker, "w", encoding="utf-8") as marker:
        marker.write("host:1\n")
    reopened = FilesystemFileStore(props)
    assert reopened.total_size() == 10
    assert reopened.count() == 1


def test_stale_spool_files_swept(props, store):
    """Spool files older than the lock max_age are removed on startup."""
    leftover = os.path.join(store.spool, "spool-leftover")
    with open(leftover, "wb") as spool_file:
        spool_file.write(b"z")
    old = time.time() - 10000
    os.utime(leftover, (old, old))
    FilesystemFileStore(props)
    assert not os.path.exists(leftover)


def test_store_threads_same_identifier(store):
    """Concurrent writes of one identifier serialize; one complete write wins."""
    contents = [bytes([65 + position]) * 5000 for position in range(4)]

    def write(content):
        store.store(IDENTIFIER, content)

    threads = [Thread(target=write, args=(content,)) for content in contents]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert store.fetch(IDENTIFIER) in contents
    assert store.total_size() == 5000
    assert not os.path.exists(store._build_path(IDENTIFIER) + ".lock")


def test_store_threads_different_identifiers(store):
    """Concurrent writes of different identifiers all succeed."""
    identifiers = [Identifier.generate() for _ in range(10)]

    def write(identifier):
        store.store(identifier, str(identifier).encode("utf-8"))

    threads = [Thread(target=write, args=(identifier,)) for identifier in identifiers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    for identifier in identifiers:
        assert store.fetch(identifier) == str(identifier).encode("utf-8")
    assert store.total_size() == 36 * 10
    assert store.count() == 10


def test_readers_never_see_partial_writes(store):
    """A reader sees either the complete previous or the complete new content."""
    old = b"o" * 200000
    new = b"n" * 300000
    store.store(IDENTIFIER, old)
    seen = []

    def read():
        for _ in range(50):
            seen.append(store.fetch(IDENTIFIER))

    reader = Thread(target=read)
    reader.start()
    store.store(IDENTIFIER, new)
    reader.join()
    assert all(content in (old, new) for content in seen)


@slow_test
def test_store_threads_stress(props):
    """Many threads storing, overwriting and deleting keep the total size exact."""
    props["store_cache_sizes"] = True
    store = FilesystemFileStore(props)
    identifiers = [Identifier.generate() for _ in range(20)]

    def churn(offset):
        for round_number in range(25):
            identifier = identifiers[(offset + round_number) % len(identifiers)]
            if round_number % 5 == 4:
                store.delete(identifier)
            else:
                store.store(identifier, os.urandom(100 * (round_number + 1)))

    threads = [Thread(target=churn, args=(offset,)) for offset in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    expected = sum(store.size(identifier) or 0 for identifier in identifiers)
    assert store.total_size() == expected
    assert FilesystemFileStore(props).total_size() == expected
