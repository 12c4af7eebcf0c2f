"""Filesystem utilities shared by the account store and the command line."""
import errno
import hashlib
import logging
import os
import re
import stat
from typing import IO
from typing import Iterable
from typing import Optional

from acme_dns_issuer import errors

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r'[^A-Za-z0-9@._+-]')
_MAX_SLUG_BYTES = 200


def make_or_verify_dir(directory: str, mode: int = 0o755) -> None:
    """Make sure directory exists with proper permissions.

    :param str directory: Path to a directory.
    :param int mode: Directory mode, applied only when the directory is created.

    :raises OSError: if the directory cannot be created and does not already exist.

    """
    try:
        os.makedirs(directory, mode)
    except OSError as exception:
        if exception.errno != errno.EEXIST:
            raise


def safe_open(path: str, mode: str = "w", chmod: Optional[int] = None) -> IO:
    """Safely open a new file.

    The file is created with ``O_EXCL``, so an existing file is never
    truncated or overwritten.

    :param str path: Path to a file.
    :param str mode: Same os `mode` for `open`.
    :param int chmod: Permissions of the new file, Python defaults if ``None``.

    :raises FileExistsError: if a file already exists at `path`.

    """
    open_args: tuple[int, ...] = ()
    if chmod is not None:
        open_args = (chmod,)
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_RDWR, *open_args)
    return os.fdopen(fd, mode)


def has_world_permissions(path: str) -> bool:
    """Check if everybody can read or write the file at `path`."""
    return bool(os.stat(path).st_mode & (stat.S_IROTH | stat.S_IWOTH))


def safe_filename(name: str) -> str:
    """Turn an arbitrary name (a contact address, a domain) into a file name.

    >>> safe_filename('admin@example.com')
    'admin@example.com'
    >>> safe_filename('*.example.com')
    '_.example.com'

    """
    return _UNSAFE_FILENAME_CHARS.sub('_', name)


def domains_slug(domains: Iterable[str]) -> str:
    """File name identifying a domain set, independent of its order.

    Sets whose joined names would not fit in a file name (leaving room
    for an extension) are named by the SHA-256 digest of the join instead.

    """
    slug = safe_filename('_'.join(sorted(set(domains))))
    if len(slug.encode()) > _MAX_SLUG_BYTES:
        return hashlib.sha256(slug.encode()).hexdigest()
    return slug


def read_secret_file(path: str) -> str:
    """Read a secret (e.g. an export password) from the first line of a file.

    :raises errors.Error: if the file cannot be read or is empty.

    """
    try:
        if has_world_permissions(path):
            logger.warning('Unsafe permissions on secret file: %s', path)
        with open(path, encoding='utf-8') as f:
            value = f.readline().rstrip('\r\n')
    except OSError as e:
        raise errors.Error(f'Unable to read {path}: {e}')
    if not value:
        raise errors.Error(f'{path} is empty')
    return value
