"""Default configuration variables for ResourceStore"""

import logging
import os
import yaml
from resourcestore.resourcestore_exceptions import ConfigError

############### Store Path ###############
# Default path for `FilesystemFileStore` if no path is provided
STORE_PATH = "/var/resourcestore/"
# Name of the configuration file written into the root of a filesystem store
STORE_CONFIG_FILENAME = "filestore.yaml"
# Name of the spool directory (same filesystem as the store) for staged writes
SPOOL_DIRNAME = "spool"
# Name of the per top-level shard size cache file
SIZE_CACHE_FILENAME = ".size"

############### Directory Structure ###############
# Number of nested directories built from the first 8 hex characters of an
# identifier. 0 stores every blob flat under the store root.
SHARD_DEPTH = 4  # WARNING: DO NOT CHANGE UNLESS SETTING UP NEW RESOURCESTORE
VALID_SHARD_DEPTHS = (0, 1, 2, 4, 8)
# Example (SHARD_DEPTH=4):
#    /var/resourcestore
#    ├── filestore.yaml
#    ├── spool
#    └── 1e
#        └── f0
#            └── 3c
#                └── 5d
#                    └── 1ef03c5d-93a2-6b8e-b5ad-cb306488e280

############### Writes ###############
# Size of the chunks read from an incoming stream (in bytes)
BUFFER_SIZE = 2**14
# Maximum number of bytes the store may hold, `None` for no quota
QUOTA = None
# Maintain total sizes in each top level shard directory
CACHE_SIZES = False
# Quota for the in-memory FileStore
MEMORY_QUOTA = 2**18

############### Hash Algorithms ###############
# Algorithm used to calculate the checksum returned by every store operation
ALGORITHM = "md5"
SUPPORTED_ALGORITHMS = [
    "md5",
    "sha1",
    "sha224",
    "sha256",
    "sha384",
    "sha512",
    "blake2b",
    "blake2s",
]

############### Locking ###############
# retries   - attempts before giving up, `None` to retry until `timeout`
# sleep_inc - seconds added to the sleep between attempts on every retry
# min_sleep - shortest sleep between attempts
# max_sleep - longest sleep between attempts
# max_age   - seconds after which an existing lock is considered stale and stolen
# suspend   - seconds to wait after stealing a lock so the previous holder notices
# timeout   - overall seconds to wait for a lock, `None` to wait forever
LOCKING = {
    "retries": None,
    "sleep_inc": 0.05,
    "min_sleep": 0.01,
    "max_sleep": 0.5,
    "max_age": 1024,
    "suspend": 1,
    "timeout": 30,
}

############### MetaStore ###############
METASTORE_BACKEND = "memory"
METASTORE_BACKENDS = {
    "memory": ("resourcestore.metastore.memorymetastore", "MemoryMetaStore"),
    "sql": ("resourcestore.metastore.sqlmetastore", "SQLMetaStore"),
    "triple": ("resourcestore.metastore.triplemetastore", "TripleMetaStore"),
}
# Default number of tuples returned by the finders
DEFAULT_LIMIT = 100
# Journal entries a TripleMetaStore appends before it rewrites its graph file; the
# file is also rewritten once the journal outgrows the number of subjects
JOURNAL_COMPACT_MIN = 1000
# Properties managed by the system, not writable through the safe API
SYSTEM_PROPERTIES = frozenset(
    [
        "checksum",
        "extent",
        "format",
        "created",
        "modified",
        "uploadaddress",
        "useragent",
    ]
)


def load_properties(yaml_path):
    """Read a YAML configuration document and return it as a properties dictionary.

    :param str yaml_path: Path to the YAML file.

    :raises ConfigError: If the file is missing or does not contain a mapping.

    :return: Properties read from the file.
    :rtype: dict
    """
    if not os.path.exists(yaml_path):
        exception_string = (
            f"ResourceStore - load_properties: configuration file not found: {yaml_path}"
        )
        logging.getLogger(__name__).critical(exception_string)
        raise ConfigError(exception_string)

    with open(yaml_path, "r", encoding="utf-8") as config_file:
        yaml_data = yaml.safe_load(config_file)

    if yaml_data is None:
        return {}
    if not isinstance(yaml_data, dict):
        exception_string = (
            f"ResourceStore - load_properties: {yaml_path} must contain a mapping,"
            + f" found: {type(yaml_data)}"
        )
        logging.getLogger(__name__).critical(exception_string)
        raise ConfigError(exception_string)
    return yaml_data
