"""Core module for FilesystemFileStore"""

import glob
import logging
import os
import re
import threading
import time
from tempfile import NamedTemporaryFile
import yaml
from resourcestore import resourcestore_config
from resourcestore.filestore import FileStore, Stream, new_checksum
from resourcestore.identifier import Identifier
from resourcestore.locking import PathLock
from resourcestore.resourcestore_exceptions import ConfigError, QuotaExceeded

# Leaf files are named with the canonical (lowercase) identifier
_LEAF_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\Z"
)
_SHARD_PATTERN = re.compile(r"[0-9a-f]{1,8}\Z")


class FilesystemFileStore(FileStore):
    """FilesystemFileStore stores resource content on disk in a hierarchy of sharded
    directories derived from each resource's identifier.

    The first 8 hex characters of the identifier are split into `store_shard_depth`
    equal groups, and each group becomes one nested directory. The leaf file is
    named with the full identifier. A shard depth of 0 stores every file flat
    under the store root.

    Writes are staged in a spool directory on the same filesystem and moved into
    place with an atomic rename, so readers only ever see complete content. Writes
    (and deletes) of one identifier are serialized by a `PathLock` on its target
    path; reads never lock.

    FilesystemFileStore initializes using a given properties dictionary. On first
    use it writes a configuration file 'filestore.yaml' into the store path; later
    instances must be supplied with matching properties.

    :param dict properties: A Python dictionary with the following keys (and values):
        - store_path (str): Path to the store directory (required).
        - store_shard_depth (int): 0, 1, 2, 4 or 8.
        - store_algorithm (str): `hashlib` algorithm used for checksums.
        - store_buffer_size (int): Size of the chunks read from incoming streams.
        - store_quota (int): Maximum number of bytes held by the store, or None.
        - store_cache_sizes (bool): Maintain per top-level shard size cache files.
        - store_locking (dict): Options for the per-identifier `PathLock`.
    :param logging.Logger logger: Logger to use, defaults to this module's logger.
    """

    # Property (filestore configuration) requirements
    property_required_keys = ["store_path"]
    # Properties recorded in 'filestore.yaml' that must never change for a store
    property_recorded_keys = ["store_shard_depth", "store_algorithm"]
    # Permissions settings for writing files and creating directories
    fmode = 0o664
    dmode = 0o755

    def __init__(self, properties=None, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        if not properties:
            # Cannot instantiate or initialize FilesystemFileStore without config
            exception_string = (
                "FilesystemFileStore - properties must be supplied."
                + f" Properties: {properties}"
            )
            self.logger.debug(exception_string)
            raise ConfigError(exception_string)

        checked_properties = self._validate_properties(properties)
        self.root = os.path.abspath(checked_properties["store_path"])
        self.shard_depth = checked_properties["store_shard_depth"]
        self.algorithm = checked_properties["store_algorithm"]
        self.buffer_size = checked_properties["store_buffer_size"]
        self.quota = checked_properties["store_quota"]
        self.cache_sizes = checked_properties["store_cache_sizes"]

        self.filestore_configuration_yaml = os.path.join(
            self.root, resourcestore_config.STORE_CONFIG_FILENAME
        )
        self._verify_filestore_properties(checked_properties)

        self.logger.debug("FilesystemFileStore - Initializing, properties verified.")
        if not os.path.exists(self.filestore_configuration_yaml):
            self.logger.debug(
                "FilesystemFileStore - configuration file not found."
                + " Writing configuration file."
            )
            self._write_properties(checked_properties)

        self.spool = os.path.join(self.root, resourcestore_config.SPOOL_DIRNAME)
        self._create_path(self.spool)

        self.lock = PathLock(checked_properties["store_locking"], logger=self.logger)
        self.size_lock = threading.Lock()
        self._sweep_spool()
        self._total_size = self._find_store_size()
        self.logger.debug(
            "FilesystemFileStore - Initialization success. Store root: %s", self.root
        )

    # Configuration and Related Methods

    def _validate_properties(self, properties):
        """Validate a properties dictionary and fill in defaults for optional keys.

        :param dict properties: Dictionary containing filestore properties.

        :raises ConfigError: If a key is missing or a value is invalid.

        :return: The validated properties, including defaults.
        :rtype: dict
        """
        if not isinstance(properties, dict):
            exception_string = (
                "FilesystemFileStore - _validate_properties: Invalid argument -"
                + " expected a dictionary."
            )
            self.logger.debug(exception_string)
            raise ConfigError(exception_string)

        for key in self.property_required_keys:
            if properties.get(key) is None:
                exception_string = (
                    "FilesystemFileStore - _validate_properties: Missing required"
                    + f" key: {key}."
                )
                self.logger.debug(exception_string)
                raise ConfigError(exception_string)

        checked = {
            "store_path": str(properties["store_path"]),
            "store_shard_depth": properties.get(
                "store_shard_depth", resourcestore_config.SHARD_DEPTH
            ),
            "store_algorithm": properties.get(
                "store_algorithm", resourcestore_config.ALGORITHM
            ),
            "store_buffer_size": properties.get(
                "store_buffer_size", resourcestore_config.BUFFER_SIZE
            ),
            "store_quota": properties.get("store_quota", resourcestore_config.QUOTA),
            "store_cache_sizes": bool(
                properties.get("store_cache_sizes", resourcestore_config.CACHE_SIZES)
            ),
            "store_locking": properties.get("store_locking") or {},
        }

        try:
            checked["store_shard_depth"] = int(checked["store_shard_depth"])
        except (TypeError, ValueError) as err:
            raise ConfigError(
                "FilesystemFileStore - _validate_properties: store_shard_depth must be"
                + f" an integer: {checked['store_shard_depth']}"
            ) from err
        if checked["store_shard_depth"] not in resourcestore_config.VALID_SHARD_DEPTHS:
            exception_string = (
                "FilesystemFileStore - _validate_properties: store_shard_depth must be"
                + f" one of {resourcestore_config.VALID_SHARD_DEPTHS}."
                + f" Supplied: {checked['store_shard_depth']}"
            )
            self.logger.error(exception_string)
            raise ConfigError(exception_string)

        new_checksum(checked["store_algorithm"])

        buffer_size = checked["store_buffer_size"]
        if not isinstance(buffer_size, int) or buffer_size < 1:
            exception_string = (
                "FilesystemFileStore - _validate_properties: store_buffer_size must be"
                + f" a positive integer. Supplied: {buffer_size}"
            )
            self.logger.error(exception_string)
            raise ConfigError(exception_string)

        quota = checked["store_quota"]
        if quota is not None and (not isinstance(quota, int) or quota < 0):
            exception_string = (
                "FilesystemFileStore - _validate_properties: store_quota must be None"
                + f" or a non-negative integer. Supplied: {quota}"
            )
            self.logger.error(exception_string)
            raise ConfigError(exception_string)

        return checked

    def _verify_filestore_properties(self, properties):
        """Determines whether FilesystemFileStore can instantiate at the store path.

        If 'filestore.yaml' exists, its recorded properties are compared with the
        supplied ones and a mismatch raises. If it does not exist, the store path must
        not already contain sharded directories or resource files.

        :param dict properties: Validated properties.
        """
        if os.path.exists(self.filestore_configuration_yaml):
            self.logger.debug(
                "FilesystemFileStore - Config found (filestore.yaml) at {%s}."
                + " Verifying properties.",
                self.filestore_configuration_yaml,
            )
            recorded = self._load_properties(self.filestore_configuration_yaml)
            for key in self.property_recorded_keys:
                if recorded.get(key) != properties[key]:
                    exception_string = (
                        f"FilesystemFileStore - Given properties ({key}: {properties[key]})"
                        + f" does not match. FileStore configuration ({key}:"
                        + f" {recorded.get(key)}) found at: {self.filestore_configuration_yaml}"
                    )
                    self.logger.critical(exception_string)
                    raise ConfigError(exception_string)
        elif os.path.isdir(self.root):
            for entry in os.listdir(self.root):
                if _LEAF_PATTERN.match(entry) or (
                    _SHARD_PATTERN.match(entry)
                    and os.path.isdir(os.path.join(self.root, entry))
                ):
                    exception_string = (
                        "FilesystemFileStore - Unable to initialize FileStore."
                        + " `filestore.yaml` is not present but conflicting store"
                        + f" content exists ({entry}). Please supply a new path."
                    )
                    self.logger.critical(exception_string)
                    raise ConfigError(exception_string)

    def _load_properties(self, filestore_yaml_path):
        """Get and return the properties recorded in a 'filestore.yaml'.

        :return: Recorded properties (`store_shard_depth`, `store_algorithm`).
        :rtype: dict
        """
        with open(filestore_yaml_path, "r", encoding="utf-8") as fs_yaml_file:
            yaml_data = yaml.safe_load(fs_yaml_file) or {}

        filestore_yaml_dict = {}
        for key in self.property_recorded_keys:
            filestore_yaml_dict[key] = yaml_data.get(key)
        self.logger.debug(
            "FilesystemFileStore - load_properties: Successfully retrieved"
            + " 'filestore.yaml' properties."
        )
        return filestore_yaml_dict

    def _write_properties(self, properties):
        """Writes 'filestore.yaml' to the store's root directory.

        :param dict properties: Validated properties.
        """
        if os.path.exists(self.filestore_configuration_yaml):
            exception_string = (
                "FilesystemFileStore - write_properties: configuration file"
                + " 'filestore.yaml' already exists."
            )
            self.logger.error(exception_string)
            raise FileExistsError(exception_string)

        self._create_path(self.root)
        filestore_configuration_yaml = self._build_filestore_yaml_string(
            properties["store_shard_depth"], properties["store_algorithm"]
        )
        with open(
            self.filestore_configuration_yaml, "w", encoding="utf-8"
        ) as fs_yaml_file:
            fs_yaml_file.write(filestore_configuration_yaml)

        self.logger.debug(
            "FilesystemFileStore - write_properties: Configuration file written to: %s",
            self.filestore_configuration_yaml,
        )

    @staticmethod
    def _build_filestore_yaml_string(store_shard_depth, store_algorithm):
        """Build a YAML string representing the configuration for a FileStore.

        :param int store_shard_depth: Number of nested shard directories.
        :param str store_algorithm: Checksum algorithm.

        :return: A YAML string representing the configuration for a FileStore.
        :rtype: str
        """
        return f"""# Configuration variables for this FileStore

############### Directory Structure ###############
# Number of nested directories built from the first 8 hex characters of an
# identifier; 0 stores resources flat under the store root.
store_shard_depth: {store_shard_depth}  # WARNING: DO NOT CHANGE UNLESS SETTING UP NEW STORE

############### Checksums ###############
# Hash algorithm used to calculate the checksum of stored content
store_algorithm: "{store_algorithm}"
"""

    # FileStore API

    def store_stream(self, identifier, stream):
        identifier = Identifier.coerce(identifier)
        abs_file_path = self._build_path(identifier)
        self.logger.debug(
            "FilesystemFileStore - store_stream: Request to store %s at %s",
            identifier,
            abs_file_path,
        )

        with self.lock.lock(abs_file_path):
            existing_size = self._file_size(abs_file_path) or 0
            tmp_file_name, tmp_file_size, checksum = self._write_to_spool_file(
                identifier, stream, existing_size
            )
            try:
                self._create_path(os.path.dirname(abs_file_path))
                os.replace(tmp_file_name, abs_file_path)
            except Exception as err:
                exception_string = (
                    "FilesystemFileStore - store_stream: failed to move spool file"
                    + f" {tmp_file_name} to {abs_file_path}. Unexpected {err=}, {type(err)=}"
                )
                self.logger.error(exception_string)
                self._delete_spool_file(tmp_file_name)
                raise
            self._update_size(abs_file_path, tmp_file_size - existing_size)

        self.logger.info(
            "FilesystemFileStore - store_stream: Wrote %d bytes for %s",
            tmp_file_size,
            identifier,
        )
        return checksum

    def fetch_stream(self, identifier):
        abs_file_path = self._build_path(Identifier.coerce(identifier))
        try:
            # pylint: disable=R1732
            return open(abs_file_path, "rb")
        except FileNotFoundError:
            return None

    def delete(self, identifier):
        identifier = Identifier.coerce(identifier)
        abs_file_path = self._build_path(identifier)
        if not os.path.isfile(abs_file_path):
            return False

        with self.lock.lock(abs_file_path):
            try:
                file_size = os.path.getsize(abs_file_path)
                os.remove(abs_file_path)
            except FileNotFoundError:
                return False
            self._update_size(abs_file_path, -file_size)

        self.logger.info(
            "FilesystemFileStore - delete: Deleted %s (%d bytes)", identifier, file_size
        )
        return True

    def has(self, identifier):
        return os.path.isfile(self._build_path(Identifier.coerce(identifier)))

    def size(self, identifier):
        return self._file_size(self._build_path(Identifier.coerce(identifier)))

    def total_size(self):
        return self._total_size

    def count(self):
        count = 0
        for _, _, files in self._walk():
            count += len(files)
        return count

    # Writing

    def _write_to_spool_file(self, identifier, stream, existing_size=0):
        """Copy `stream` into a uniquely named file in the spool directory while
        calculating its checksum and size. The quota is checked after every chunk;
        the store's total size is never modified here.

        :param Identifier identifier: Identifier being stored (for logging).
        :param stream: Readable binary object or path.
        :param int existing_size: Size of the entry being replaced, if any.

        :raises QuotaExceeded: If the quota would be exceeded.

        :return: tuple - spool file name, number of bytes written, checksum.
        """
        tmp = self._mktmpfile(self.spool)
        self.logger.debug(
            "FilesystemFileStore - _write_to_spool_file: spool file created: %s", tmp.name
        )

        tmp_file_completion_flag = False
        obj_stream = Stream(stream, self.buffer_size)
        try:
            checksum = new_checksum(self.algorithm)
            upload_size = 0
            base_size = self._total_size - existing_size
            with tmp as tmp_file:
                for data in obj_stream:
                    upload_size += len(data)
                    if self.quota is not None and base_size + upload_size > self.quota:
                        exception_string = (
                            "FilesystemFileStore - _write_to_spool_file: FileStore quota"
                            + f" limit ({self.quota} bytes) exceeded while storing"
                            + f" {identifier}."
                        )
                        self.logger.error(exception_string)
                        raise QuotaExceeded(exception_string)
                    tmp_file.write(data)
                    checksum.update(data)

            tmp_file_completion_flag = True
            return tmp.name, upload_size, checksum.hexdigest()
        finally:
            obj_stream.close()
            if not tmp_file_completion_flag:
                self._delete_spool_file(tmp.name)

    def _mktmpfile(self, path):
        """Create a temporary file at the given path ready to be written.

        :param str path: Path to the file location.

        :return: file object - object with a file-like interface.
        """
        self._create_path(path)
        tmp = NamedTemporaryFile(dir=path, prefix="spool-", delete=False)

        # Ensure tmp file is created with desired permissions
        if self.fmode is not None:
            oldmask = os.umask(0)
            try:
                os.chmod(tmp.name, self.fmode)
            finally:
                os.umask(oldmask)
        return tmp

    def _delete_spool_file(self, tmp_file_name):
        try:
            if os.path.exists(tmp_file_name):
                os.remove(tmp_file_name)
        except OSError as err:
            exception_string = (
                "FilesystemFileStore - _delete_spool_file: Unexpected"
                + f" {err=} while attempting to delete spool file: {tmp_file_name}"
            )
            self.logger.error(exception_string)

    def _sweep_spool(self):
        """Remove spool files left behind by writers that died before they could
        clean up. Only files older than the lock `max_age` are removed, so writes
        in flight in other processes are left alone."""
        max_age = self.lock.max_age
        if max_age is None or not os.path.isdir(self.spool):
            return
        now = time.time()
        for entry in os.scandir(self.spool):
            try:
                if entry.is_file() and now - entry.stat().st_mtime > max_age:
                    self.logger.warning(
                        "FilesystemFileStore - _sweep_spool: Removing stale spool file %s",
                        entry.path,
                    )
                    os.remove(entry.path)
            except FileNotFoundError:
                continue

    # Size accounting

    def _update_size(self, file_path, amount):
        """Adjust the in-memory total size (and the size cache file responsible for
        `file_path`, when caching is enabled) by `amount` bytes.

        :return: The updated total size.
        :rtype: int
        """
        with self.size_lock:
            self._total_size += amount
            total_size = self._total_size

        if self.cache_sizes and amount:
            size_cache_path = self._size_cache_path(file_path)
            with self.lock.lock(size_cache_path):
                self._write_size_cache(
                    size_cache_path, self._read_size_cache(size_cache_path) + amount
                )
        return total_size

    def _size_cache_path(self, file_path):
        """Return the size cache file responsible for `file_path`:
            root/1ef03c5d/<id>      --> root/1ef03c5d/.size
            root/1ef0/3c5d/<id>     --> root/1ef0/.size
            root/1e/f0/3c/5d/<id>   --> root/1e/.size
            root/<id>               --> root/.size
        """
        relpath = os.path.relpath(file_path, self.root)
        if self.shard_depth == 0:
            return os.path.join(self.root, resourcestore_config.SIZE_CACHE_FILENAME)
        top_shard = relpath.split(os.sep)[0]
        return os.path.join(
            self.root, top_shard, resourcestore_config.SIZE_CACHE_FILENAME
        )

    def _get_size_cache_files(self):
        """Find all previously generated size cache files.

        :return: Size cache paths mapped to the byte count they hold.
        :rtype: dict
        """
        cache_files = {}
        patterns = [
            os.path.join(self.root, resourcestore_config.SIZE_CACHE_FILENAME),
            os.path.join(
                glob.escape(self.root), "*", resourcestore_config.SIZE_CACHE_FILENAME
            ),
        ]
        for pattern in patterns:
            for size_cache_path in glob.glob(pattern):
                cache_files[size_cache_path] = self._read_size_cache(size_cache_path)
        return cache_files

    @staticmethod
    def _read_size_cache(size_cache_path):
        try:
            with open(size_cache_path, "r", encoding="utf-8") as size_file:
                return int(size_file.read().strip() or 0)
        except FileNotFoundError:
            return 0

    def _write_size_cache(self, size_cache_path, size):
        tmp = self._mktmpfile(self.spool)
        with tmp as tmp_file:
            tmp_file.write(str(size).encode("utf-8"))
        os.replace(tmp.name, size_cache_path)

    def _find_store_size(self):
        """Return the total size of the store's content.

        With size caching enabled and cache files present, the cache files are summed
        instead of traversing the store. Otherwise the whole store is traversed, and
        cache files are (re)built when caching is enabled. Cache files found while
        caching is disabled are removed, since they would no longer be maintained.

        :return: Total size in bytes.
        :rtype: int
        """
        cache_files = self._get_size_cache_files()

        if self.cache_sizes and cache_files:
            self.logger.debug(
                "FilesystemFileStore - _find_store_size: Using size cache files."
            )
            return sum(cache_files.values())

        if not self.cache_sizes and cache_files:
            self.logger.debug(
                "FilesystemFileStore - _find_store_size: Removing previously cached"
                + " size files."
            )
            for size_cache_path in cache_files:
                os.remove(size_cache_path)

        self.logger.info(
            "FilesystemFileStore - _find_store_size: Calculating current size of"
            + " FileStore (this could take a moment...)"
        )
        total_size = 0
        shard_sizes = {}
        for dirpath, _, files in self._walk():
            for file in files:
                file_path = os.path.join(dirpath, file)
                file_size = self._file_size(file_path) or 0
                total_size += file_size
                size_cache_path = self._size_cache_path(file_path)
                shard_sizes[size_cache_path] = (
                    shard_sizes.get(size_cache_path, 0) + file_size
                )

        if self.cache_sizes:
            for size_cache_path, size in shard_sizes.items():
                self._write_size_cache(size_cache_path, size)

        quota = f" of {self.quota}" if self.quota is not None else ""
        self.logger.info(
            "FilesystemFileStore - _find_store_size: FileStore currently using %d%s bytes",
            total_size,
            quota,
        )
        return total_size

    # Paths

    def _shard(self, identifier_string):
        """Generates the list of shard directory names for an identifier: the first 8
        hex characters split into `self.shard_depth` groups of equal width.

        Example (depth 4):
            ['1e', 'f0', '3c', '5d']

        :param str identifier_string: Canonical identifier string.

        :return: A list of directory names (empty for depth 0).
        :rtype: list
        """
        if self.shard_depth == 0:
            return []
        width = 8 // self.shard_depth
        return [identifier_string[i : i + width] for i in range(0, 8, width)]

    def _build_path(self, identifier):
        """Build the absolute file path for a given identifier.

        :param Identifier identifier: Identifier to build a file path for.

        :return: An absolute file path.
        :rtype: str
        """
        identifier_string = str(identifier)
        return os.path.join(self.root, *self._shard(identifier_string), identifier_string)

    def _walk(self):
        """Walk the store, yielding `(dirpath, dirnames, resource_files)` and skipping
        the spool directory, lock markers and size cache files."""
        for dirpath, dirnames, files in os.walk(self.root):
            if dirpath == self.root:
                dirnames[:] = [
                    name for name in dirnames if name != resourcestore_config.SPOOL_DIRNAME
                ]
            yield dirpath, dirnames, [name for name in files if _LEAF_PATTERN.match(name)]

    def _create_path(self, path):
        """Physically create the folder path (and all intermediate ones) on disk.

        :param str path: The path to create.
        :raises AssertionError: If the path already exists but is not a directory.
        """
        try:
            os.makedirs(path, self.dmode)
        except FileExistsError:
            assert os.path.isdir(path), f"expected {path} to be a directory"

    @staticmethod
    def _file_size(path):
        try:
            return os.path.getsize(path)
        except FileNotFoundError:
            return None
