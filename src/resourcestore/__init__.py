"""ResourceStore is a datastore that pairs opaque binary resources with searchable
metadata, each addressed by a time-ordered 128-bit identifier.

ResourceStore is made of two independent stores that share identifiers:

- A FileStore persists resource content. The filesystem implementation shards
    files into nested directories derived from the identifier, stages writes in a
    spool directory and moves them into place atomically, serializes writers of
    one identifier with a path lock, and enforces an optional quota.
- A MetaStore persists string-valued properties for each identifier and answers
    exact and wildcard searches with ordering and pagination. In-memory, SQL
    (SQLite or PostgreSQL) and triple-graph backends implement the same contract.

The `ResourceStore` facade combines both, recording checksum, size and timestamps
for every stored resource.
"""

from resourcestore.identifier import Identifier
from resourcestore.filestore import FileStore, MemoryFileStore
from resourcestore.filesystemfilestore import FilesystemFileStore
from resourcestore.metastore import MetaStore, MetaStoreFactory, PropertySet
from resourcestore.resourcestore import (
    ResourceStore,
    ResourceStoreFactory,
    StoredResource,
)

__all__ = (
    "Identifier",
    "FileStore",
    "MemoryFileStore",
    "FilesystemFileStore",
    "MetaStore",
    "MetaStoreFactory",
    "PropertySet",
    "ResourceStore",
    "ResourceStoreFactory",
    "StoredResource",
)
__version__ = "1.0.0"
