"""File locks serializing issuance attempts for one domain set."""
import errno
import fcntl
import logging
import os
from types import TracebackType
from typing import Iterable
from typing import Optional
from typing import Type

from acme_dns_issuer import errors
from acme_dns_issuer import util

logger = logging.getLogger(__name__)


def lock_domains(locks_dir: str, domains: Iterable[str]) -> 'LockFile':
    """Place a lock on a domain set.

    Two attempts for the same domain set must not run at the same time: the
    cleanup of one would delete the challenge records of the other.

    :param str locks_dir: directory holding the lock files
    :param domains: requested domain names, in any order

    :returns: the locked LockFile object
    :rtype: LockFile

    :raises errors.LockError: if unable to acquire the lock

    """
    util.make_or_verify_dir(locks_dir, 0o700)
    return LockFile(os.path.join(locks_dir, util.domains_slug(domains) + '.lock'))


class LockFile:
    """
    A lock on a file, held from creation until `release` is called.

    The lock is released when the locked file is closed or the process
    exits. It cannot be used to provide synchronization between threads.
    """
    def __init__(self, path: str) -> None:
        self._path = path
        self._fd: Optional[int] = None

        self.acquire()

    def __repr__(self) -> str:
        repr_str = '{0}({1}) <'.format(self.__class__.__name__, self._path)
        if self.is_locked():
            repr_str += 'acquired>'
        else:
            repr_str += 'released>'
        return repr_str

    def __enter__(self) -> 'LockFile':
        return self

    def __exit__(self, exc_type: Optional[Type[BaseException]],
                 exc_value: Optional[BaseException],
                 traceback: Optional[TracebackType]) -> None:
        if self.is_locked():
            self.release()

    def is_locked(self) -> bool:
        """Check if the lock is currently held by this object."""
        return self._fd is not None

    def acquire(self) -> None:
        """Acquire the lock.

        :raises errors.LockError: if another process holds the lock
        """
        while self._fd is None:
            fd = os.open(self._path, os.O_CREAT | os.O_WRONLY, 0o600)
            try:
                self._try_lock(fd)
                if self._lock_success(fd):
                    self._fd = fd
            finally:
                if self._fd is None:
                    os.close(fd)

    def _try_lock(self, fd: int) -> None:
        try:
            fcntl.lockf(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as err:
            if err.errno in (errno.EACCES, errno.EAGAIN):
                logger.debug('A lock on %s is held by another process.', self._path)
                raise errors.LockError(
                    'Another issuance for the same domains is already running.')
            raise

    def _lock_success(self, fd: int) -> bool:
        """Did we lock the file that is currently at our path?

        The file is deleted on release, so another process may have removed
        and recreated it between our open and our lock.
        """
        try:
            stat1 = os.stat(self._path)
        except OSError as err:
            if err.errno == errno.ENOENT:
                return False
            raise

        stat2 = os.fstat(fd)
        return stat1.st_dev == stat2.st_dev and stat1.st_ino == stat2.st_ino

    def release(self) -> None:
        """Remove, close, and release the lock file."""
        # The file must be removed before the lock is released, otherwise a
        # third process could lock a file that is about to be deleted.
        try:
            os.remove(self._path)
        finally:
            if self._fd is None:  # pragma: no cover
                raise TypeError('Error, self._fd is None.')
            try:
                os.close(self._fd)
            finally:
                self._fd = None
