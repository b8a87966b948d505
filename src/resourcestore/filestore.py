"""FileStore Interface"""

import hashlib
import io
import logging
import os
import threading
from abc import ABC, abstractmethod
from resourcestore import resourcestore_config
from resourcestore.identifier import Identifier
from resourcestore.resourcestore_exceptions import ConfigError, QuotaExceeded


class FileStore(ABC):
    """FileStore persists opaque byte streams keyed by resource identifier.

    Identifiers may be given as `Identifier` objects or in their canonical string
    form. Every store operation returns the content checksum of the bytes written;
    absent entries are reported as `None`/`False`, never as errors.
    """

    def store(self, identifier, data):
        """Store `data` (bytes) for `identifier`, replacing any existing entry.

        :param identifier: Identifier of the resource.
        :param bytes data: Content to store.

        :raises QuotaExceeded: If the store's quota would be exceeded.

        :return: str - Content checksum (hex digest) of `data`.
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(
                f"{type(self).__name__} - store: data must be bytes, got {type(data)}"
            )
        return self.store_stream(identifier, io.BytesIO(bytes(data)))

    @abstractmethod
    def store_stream(self, identifier, stream):
        """Store the content read from `stream` for `identifier`. The content is
        consumed in buffered chunks; a reader never observes a partially written
        entry.

        :param identifier: Identifier of the resource.
        :param stream: Readable binary object, or a path to a file.

        :raises QuotaExceeded: If the store's quota would be exceeded.

        :return: str - Content checksum (hex digest) of the stored bytes.
        """
        raise NotImplementedError()

    def fetch(self, identifier):
        """Return the content stored for `identifier` as bytes, or `None` if there
        is no entry."""
        stream = self.fetch_stream(identifier)
        if stream is None:
            return None
        with stream:
            return stream.read()

    @abstractmethod
    def fetch_stream(self, identifier):
        """Return a readable binary stream for `identifier`, or `None` if there is
        no entry. The caller is responsible for closing the stream."""
        raise NotImplementedError()

    @abstractmethod
    def delete(self, identifier):
        """Delete the entry for `identifier`.

        :return: bool - `True` if an entry was removed, `False` if none existed.
        """
        raise NotImplementedError()

    @abstractmethod
    def has(self, identifier):
        """Return `True` if an entry exists for `identifier`."""
        raise NotImplementedError()

    @abstractmethod
    def size(self, identifier):
        """Return the size in bytes of the entry for `identifier`, or `None`."""
        raise NotImplementedError()

    @abstractmethod
    def total_size(self):
        """Return the number of bytes currently held by the store."""
        raise NotImplementedError()

    @abstractmethod
    def count(self):
        """Return the number of entries currently held by the store."""
        raise NotImplementedError()


def new_checksum(algorithm):
    """Return a fresh `hashlib` object for a supported checksum algorithm."""
    if algorithm not in resourcestore_config.SUPPORTED_ALGORITHMS:
        raise ConfigError(
            f"FileStore - new_checksum: Algorithm not supported: {algorithm}."
            + f" Must be one of: {', '.join(resourcestore_config.SUPPORTED_ALGORITHMS)}"
        )
    return hashlib.new(algorithm)


class MemoryFileStore(FileStore):
    """An in-memory FileStore for testing and tryout purposes. Enforces a quota
    (256KiB unless configured) the same way the filesystem store does.

    :param dict properties: Optional `store_quota`, `store_algorithm` and
        `store_buffer_size` keys.
    :param logging.Logger logger: Logger to use, defaults to this module's logger.
    """

    def __init__(self, properties=None, logger=None):
        properties = properties or {}
        self.logger = logger or logging.getLogger(__name__)
        self.quota = properties.get("store_quota", resourcestore_config.MEMORY_QUOTA)
        self.algorithm = properties.get(
            "store_algorithm", resourcestore_config.ALGORITHM
        )
        self.buffer_size = int(
            properties.get("store_buffer_size", resourcestore_config.BUFFER_SIZE)
        )
        new_checksum(self.algorithm)
        self.data = {}
        self.data_lock = threading.Lock()
        self._total_size = 0

    def store_stream(self, identifier, stream):
        identifier = Identifier.coerce(identifier)
        with self.data_lock:
            existing = len(self.data.get(identifier, b""))
            base_size = self._total_size - existing

        checksum = new_checksum(self.algorithm)
        buffer = io.BytesIO()
        upload_size = 0
        obj_stream = Stream(stream, self.buffer_size)
        try:
            for chunk in obj_stream:
                upload_size += len(chunk)
                if self.quota is not None and base_size + upload_size > self.quota:
                    exception_string = (
                        "MemoryFileStore - store_stream: Out of memory quota"
                        + f" ({self.quota} bytes) while storing {identifier}"
                    )
                    self.logger.error(exception_string)
                    raise QuotaExceeded(exception_string)
                checksum.update(chunk)
                buffer.write(chunk)
        finally:
            obj_stream.close()

        with self.data_lock:
            previous = self.data.get(identifier)
            self.data[identifier] = buffer.getvalue()
            self._total_size += upload_size - (len(previous) if previous else 0)
        self.logger.info(
            "MemoryFileStore - store_stream: Wrote %d bytes for %s", upload_size, identifier
        )
        return checksum.hexdigest()

    def fetch_stream(self, identifier):
        identifier = Identifier.coerce(identifier)
        with self.data_lock:
            data = self.data.get(identifier)
        if data is None:
            return None
        return io.BytesIO(data)

    def delete(self, identifier):
        identifier = Identifier.coerce(identifier)
        with self.data_lock:
            data = self.data.pop(identifier, None)
            if data is None:
                return False
            self._total_size -= len(data)
        self.logger.info("MemoryFileStore - delete: Deleted %s", identifier)
        return True

    def has(self, identifier):
        return Identifier.coerce(identifier) in self.data

    def size(self, identifier):
        data = self.data.get(Identifier.coerce(identifier))
        return None if data is None else len(data)

    def total_size(self):
        return self._total_size

    def count(self):
        return len(self.data)


class Stream(object):
    """Common interface for file-like objects.

    The input `obj` can be a file-like object or a path to a file. If `obj` is
    a path to a file, then it will be opened until :meth:`close` is called.
    If `obj` is a seekable file-like object, then its original position will be
    restored when :meth:`close` is called instead of closing the object
    automatically. Closing of the stream is deferred to whatever process passed
    the stream in.

    Seekable objects are read from the beginning. Non-seekable objects (pipes,
    sockets, request bodies) are read once from their current position.
    """

    def __init__(self, obj, buffer_size=None):
        self._owned = False
        if hasattr(obj, "read"):
            try:
                pos = obj.tell() if obj.seekable() else None
            except (AttributeError, OSError):
                pos = None
        elif isinstance(obj, (str, os.PathLike)) and os.path.isfile(obj):
            obj = io.open(obj, "rb")
            self._owned = True
            pos = None
        else:
            raise ValueError("Object must be a valid file path or a readable object")

        if buffer_size is None:
            try:
                file_stat = os.stat(obj.name)
                buffer_size = file_stat.st_blksize
            except (AttributeError, TypeError, OSError):
                buffer_size = resourcestore_config.BUFFER_SIZE

        self._obj = obj
        self._pos = pos
        self._buffer_size = buffer_size

    def __iter__(self):
        """Read underlying IO object and yield results. Return object to
        original position if we didn't open it originally.
        """
        if self._owned or self._pos is not None:
            self._obj.seek(0)

        while True:
            data = self._obj.read(self._buffer_size)

            if not data:
                break

            if isinstance(data, str):
                data = data.encode("utf8")
            yield data

        if self._pos is not None:
            self._obj.seek(self._pos)

    def close(self):
        """Close underlying IO object if we opened it, else return it to
        original position.
        """
        if self._owned:
            self._obj.close()
        elif self._pos is not None:
            self._obj.seek(self._pos)
