"""Advisory locks scoped to a single store path."""

import logging
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from resourcestore import resourcestore_config
from resourcestore.resourcestore_exceptions import ConfigError, LockTimeout

# Sentinel so `timeout=None` can still mean "wait forever" when passed explicitly
_DEFAULT = object()


class PathLock:
    """Serializes writers of the same path, both between threads of one process and
    between processes sharing the store directory.

    Threads of this process wait on a condition variable keyed by path. Once a
    thread owns the path in-process it creates a sibling marker file
    (`<path>.lock`) with `O_CREAT | O_EXCL`, retrying with a growing sleep
    (`min_sleep`, incremented by `sleep_inc` up to `max_sleep`) while another
    process holds it. A marker older than `max_age` seconds is treated as stale:
    it is removed and the caller waits `suspend` seconds before trying again so
    the previous holder has a chance to notice. Acquisition gives up with
    `LockTimeout` after `retries` failed attempts or once `timeout` seconds have
    passed, whichever comes first.

    Locks for different paths never wait on each other.

    :param dict properties: Locking options, see `resourcestore_config.LOCKING`.
    :param logging.Logger logger: Logger to use, defaults to this module's logger.
    """

    lock_suffix = ".lock"

    def __init__(self, properties=None, logger=None):
        options = dict(resourcestore_config.LOCKING)
        if properties:
            unknown = set(properties) - set(options)
            if unknown:
                raise ConfigError(
                    f"PathLock - __init__: unknown locking options: {sorted(unknown)}"
                )
            options.update(properties)
        self.logger = logger or logging.getLogger(__name__)
        self.retries = options["retries"]
        self.sleep_inc = float(options["sleep_inc"])
        self.min_sleep = float(options["min_sleep"])
        self.max_sleep = float(options["max_sleep"])
        self.max_age = options["max_age"]
        self.suspend = float(options["suspend"])
        self.timeout = options["timeout"]
        if self.min_sleep < 0 or self.max_sleep < self.min_sleep:
            raise ConfigError(
                "PathLock - __init__: sleep bounds must satisfy 0 <= min_sleep <= max_sleep."
                + f" min_sleep: {self.min_sleep}, max_sleep: {self.max_sleep}"
            )

        self.condition = threading.Condition(threading.Lock())
        self.locked_paths = []
        # Token written into each marker this instance holds, keyed by path
        self.tokens = {}

    @contextmanager
    def lock(self, path, timeout=_DEFAULT):
        """Hold the lock for `path` for the duration of a `with` block."""
        lock_path = self.acquire(path, timeout)
        try:
            yield lock_path
        finally:
            self.release(path)

    def acquire(self, path, timeout=_DEFAULT):
        """Acquire the lock for `path`.

        :param path: Path being protected (the lock marker is created beside it).
        :param float timeout: Seconds to wait, `None` to wait forever. Defaults to
            the configured timeout.

        :raises LockTimeout: If the lock could not be acquired within policy.

        :return: Path of the lock marker file.
        :rtype: str
        """
        path = str(path)
        if timeout is _DEFAULT:
            timeout = self.timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        wait_msg = f"PathLock - acquire: {path} is locked by another thread. Waiting."
        with self.condition:
            while path in self.locked_paths:
                self.logger.debug(wait_msg)
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    exception_string = (
                        f"PathLock - acquire: timed out after {timeout}s waiting for {path}"
                    )
                    self.logger.warning(exception_string)
                    raise LockTimeout(exception_string)
                self.condition.wait(remaining)
            self.locked_paths.append(path)

        try:
            return self._create_lock_file(path, timeout, deadline)
        except BaseException:
            self._release_in_process(path)
            raise

    def release(self, path):
        """Release the lock for `path`. The marker is only removed while it still
        holds the token written at acquisition; a marker that was stolen by another
        holder is left in place and only the in-process claim is released."""
        path = str(path)
        lock_path = path + self.lock_suffix
        token = self.tokens.pop(path, None)
        try:
            with open(lock_path, "r", encoding="utf-8") as lock_file:
                owner = lock_file.read().strip()
        except FileNotFoundError:
            self.logger.warning(
                "PathLock - release: lock file %s was already removed", lock_path
            )
        else:
            if owner == token:
                os.remove(lock_path)
            else:
                self.logger.warning(
                    "PathLock - release: lock file %s was stolen and is now held by"
                    + " %s, leaving it in place",
                    lock_path,
                    owner,
                )
        self._release_in_process(path)

    def is_locked(self, path):
        """Return True if `path` is locked by this process or has a lock marker."""
        path = str(path)
        with self.condition:
            if path in self.locked_paths:
                return True
        return os.path.exists(path + self.lock_suffix)

    def _release_in_process(self, path):
        with self.condition:
            self.logger.debug("PathLock - release: Releasing %s", path)
            self.locked_paths.remove(path)
            self.condition.notify_all()

    def _create_lock_file(self, path, timeout, deadline):
        """Create the sibling marker file, polling while another process holds it."""
        lock_path = path + self.lock_suffix
        os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)

        attempts = 0
        sleep_time = self.min_sleep
        while True:
            try:
                file_descriptor = os.open(
                    lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644
                )
            except FileExistsError:
                attempts += 1
            else:
                token = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"
                with os.fdopen(file_descriptor, "w", encoding="utf-8") as lock_file:
                    lock_file.write(token + "\n")
                self.tokens[path] = token
                self.logger.debug("PathLock - acquire: Locked %s", path)
                return lock_path

            if self._steal_if_stale(lock_path):
                continue

            if self.retries is not None and attempts > self.retries:
                exception_string = (
                    f"PathLock - acquire: gave up on {path} after {attempts} attempts"
                )
                self.logger.warning(exception_string)
                raise LockTimeout(exception_string)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    exception_string = (
                        f"PathLock - acquire: timed out after {timeout}s waiting for"
                        + f" lock file {lock_path}"
                    )
                    self.logger.warning(exception_string)
                    raise LockTimeout(exception_string)
                time.sleep(min(sleep_time, remaining))
            else:
                time.sleep(sleep_time)
            sleep_time = min(sleep_time + self.sleep_inc, self.max_sleep)

    def _steal_if_stale(self, lock_path):
        """Remove `lock_path` if it is older than `max_age`, then suspend.

        :return: True if the lock was stolen (or vanished) and should be retried.
        :rtype: bool
        """
        if self.max_age is None:
            return False
        try:
            age = time.time() - os.path.getmtime(lock_path)
        except FileNotFoundError:
            return True
        if age <= self.max_age:
            return False

        self.logger.warning(
            "PathLock - acquire: Stealing stale lock %s (age %.1fs > max_age %ss)",
            lock_path,
            age,
            self.max_age,
        )
        try:
            os.remove(lock_path)
        except FileNotFoundError:
            pass
        if self.suspend > 0:
            time.sleep(self.suspend)
        return True
