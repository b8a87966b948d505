"""Resource Store facade and factory"""

import importlib.metadata
import logging
from collections import namedtuple
from datetime import datetime, timezone
from resourcestore import resourcestore_config
from resourcestore.filestore import MemoryFileStore
from resourcestore.filesystemfilestore import FilesystemFileStore
from resourcestore.identifier import Identifier
from resourcestore.metastore import (
    MetaStoreFactory,
    strip_reserved,
    validate_properties,
)


class StoredResource(
    namedtuple("StoredResource", ["identifier", "checksum", "extent", "properties"])
):
    """Represents a resource written through `ResourceStore.store`.

    :param Identifier identifier: Identifier of the resource.
    :param str checksum: Content checksum (hex digest) of the stored bytes.
    :param int extent: Size of the stored content in bytes.
    :param dict properties: Properties recorded for the resource.
    """

    # Default value to prevent dynamic attribute creation
    __slots__ = ()


class ResourceStore:
    """ResourceStore pairs a FileStore (resource content) with a MetaStore (resource
    properties) sharing one identifier per resource.

    Storing content records the system properties `checksum`, `extent`, `created`
    and `modified` (and `format` when given) alongside the caller's properties, from
    which reserved names are removed. Writes to the two stores are not coupled by a
    transaction: when storing a new resource fails, its content is removed before
    the error propagates, but a crash can still leave content without properties
    or the reverse.

    :param FileStore filestore: Store for resource content.
    :param MetaStore metastore: Store for resource properties.
    :param logging.Logger logger: Logger to use, defaults to this module's logger.
    """

    def __init__(self, filestore, metastore, logger=None):
        self.filestore = filestore
        self.metastore = metastore
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def version():
        """Return the version number"""
        __version__ = importlib.metadata.version("resourcestore")
        return __version__

    def store(self, data, metadata=None, identifier=None, mimetype=None):
        """Store `data` with the properties in `metadata`, creating a new resource
        unless `identifier` names an existing one.

        :param data: Content as bytes, a readable binary object or a file path.
        :param dict metadata: Caller properties (reserved names are dropped).
        :param identifier: Identifier to store under, generated when omitted.
        :param str mimetype: Recorded as the `format` property when given.

        :raises QuotaExceeded: If the FileStore's quota would be exceeded.

        :return: StoredResource
        """
        identifier = (
            Identifier.generate() if identifier is None else Identifier.coerce(identifier)
        )
        properties = strip_reserved(
            validate_properties(metadata or {}), self.metastore.reserved_properties
        )
        is_new = not (
            self.filestore.has(identifier) or self.metastore.has_resource(identifier)
        )
        self.logger.debug(
            "ResourceStore - store: Storing %s resource %s",
            "new" if is_new else "existing",
            identifier,
        )

        try:
            if isinstance(data, (bytes, bytearray, memoryview)):
                checksum = self.filestore.store(identifier, data)
            else:
                checksum = self.filestore.store_stream(identifier, data)
            extent = self.filestore.size(identifier)

            now = _timestamp()
            with self.metastore.transaction():
                properties["checksum"] = checksum
                properties["extent"] = str(extent)
                properties["created"] = self.metastore.get(identifier, "created") or now
                properties["modified"] = now
                if mimetype is not None:
                    properties["format"] = mimetype
                if is_new:
                    self.metastore.set_all(identifier, properties)
                else:
                    self.metastore.update(identifier, properties)
        except Exception as err:
            self.logger.error(
                "ResourceStore - store: Failed to store %s. Unexpected %s",
                identifier,
                repr(err),
            )
            if is_new:
                self._discard(identifier)
            raise

        self.logger.info(
            "ResourceStore - store: Stored %s (%d bytes, checksum %s)",
            identifier,
            extent,
            checksum,
        )
        return StoredResource(
            identifier, checksum, extent, self.metastore.get_all(identifier)
        )

    def _discard(self, identifier):
        """Remove whatever a failed store left behind for a new resource. Errors are
        logged so the failure that triggered the cleanup is the one raised."""
        for cleanup in (self.filestore.delete, self.metastore.delete_resource):
            try:
                cleanup(identifier)
            except Exception as err:
                self.logger.error(
                    "ResourceStore - store: Unable to clean up %s after a failed"
                    + " store. Unexpected %s",
                    identifier,
                    repr(err),
                )

    def fetch(self, identifier):
        """Return the content of `identifier` as bytes, or `None`."""
        return self.filestore.fetch(identifier)

    def fetch_stream(self, identifier):
        """Return a readable binary stream over the content of `identifier`, or
        `None`. The caller must close it."""
        return self.filestore.fetch_stream(identifier)

    def properties(self, identifier):
        """Return every property of `identifier`."""
        return self.metastore.get_all(identifier)

    def has(self, identifier):
        """Return `True` if content is stored for `identifier`."""
        return self.filestore.has(identifier)

    def delete(self, identifier):
        """Delete the content and properties of `identifier`.

        :return: bool - `True` if either the content or any properties existed.
        """
        identifier = Identifier.coerce(identifier)
        had_properties = self.metastore.has_resource(identifier)
        deleted = self.filestore.delete(identifier)
        self.metastore.delete_resource(identifier)
        if deleted or had_properties:
            self.logger.info("ResourceStore - delete: Deleted %s", identifier)
            return True
        return False

    # Related resources

    def store_related(self, parent, data, relation, metadata=None, mimetype=None):
        """Store `data` as a resource related to `parent` (for example a thumbnail
        of an image). The new resource records `related_to` and `relation`.

        :param parent: Identifier of the resource the new one relates to.
        :param data: Content as bytes, a readable binary object or a file path.
        :param str relation: Name of the relationship (ex. "thumbnail").
        :param dict metadata: Additional caller properties.

        :return: StoredResource
        """
        parent = Identifier.coerce(parent)
        if not isinstance(relation, str) or not relation:
            raise ValueError(f"relation must be a non-empty string, got {relation!r}")
        properties = dict(metadata or {})
        properties["related_to"] = str(parent)
        properties["relation"] = relation
        return self.store(data, properties, mimetype=mimetype)

    def find_related(self, parent, relation=None, order=None, limit=0, offset=0):
        """Return `PropertySet` tuples for the resources related to `parent`,
        optionally only those with the given `relation`."""
        criteria = {"related_to": str(Identifier.coerce(parent))}
        if relation is not None:
            criteria["relation"] = relation
        return self.metastore.find_exact(
            criteria, order=order, limit=limit, offset=offset
        )

    def purge_related(self, parent, relation=None):
        """Delete the resources related to `parent`.

        :return: int - Number of resources deleted.
        """
        related = self.find_related(parent, relation)
        for identifier, _ in related:
            self.delete(identifier)
        self.logger.info(
            "ResourceStore - purge_related: Deleted %d resources related to %s",
            len(related),
            parent,
        )
        return len(related)


class ResourceStoreFactory:
    """A factory class for creating a configured `ResourceStore`.

    The FileStore is a `FilesystemFileStore` when `store_path` is configured and a
    `MemoryFileStore` otherwise; the MetaStore is chosen by `metastore_backend`.
    """

    @staticmethod
    def get_resourcestore(properties=None, logger=None):
        """Get a `ResourceStore`.

        :param properties: Properties dictionary, or a path to a YAML file holding
            one. Example Properties Dictionary:
            {
                "store_path": "/var/resourcestore",
                "store_shard_depth": 4,
                "store_algorithm": "md5",
                "store_quota": 1073741824,
                "metastore_backend": "sql",
                "metastore_connection": {"dialect": "sqlite", "database": "/var/rs.db"},
            }
        :param logging.Logger logger: Logger handed to every component.

        :return: ResourceStore
        """
        if isinstance(properties, str):
            properties = resourcestore_config.load_properties(properties)
        properties = properties or {}

        if properties.get("store_path"):
            filestore = FilesystemFileStore(properties, logger=logger)
        else:
            filestore = MemoryFileStore(properties, logger=logger)
        metastore = MetaStoreFactory.get_metastore(properties, logger=logger)
        return ResourceStore(filestore, metastore, logger=logger)


def _timestamp():
    """Return the current UTC time in ISO-8601 format."""
    return datetime.now(timezone.utc).isoformat()
