"""Logging setup of the command line.

`pre_arg_parse_setup` installs a quiet terminal handler and buffers every
record in memory. `post_arg_parse_setup` adds the rotating debug log in the
logs directory, replays the buffered records into it and sets the terminal
verbosity requested with ``-v``/``-q``.

Secrets (DNS token, export password) must never be logged.
"""
import functools
import logging
import logging.handlers
import os
import sys
import traceback
from types import TracebackType
from typing import Optional
from typing import Type

from acme_dns_issuer import errors
from acme_dns_issuer import util
from acme_dns_issuer._internal import constants
from acme_dns_issuer.configuration import IssuerConfig

# Logging format
CLI_FMT = "%(message)s"
FILE_FMT = "%(asctime)s:%(levelname)s:%(name)s:%(message)s"

logger = logging.getLogger(__name__)


def pre_arg_parse_setup() -> None:
    """Setup logging before command line arguments are parsed."""
    memory_handler = MemoryHandler()
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(CLI_FMT))
    stream_handler.setLevel(constants.QUIET_LOGGING_LEVEL)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # send all records to handlers
    root_logger.addHandler(memory_handler)
    root_logger.addHandler(stream_handler)

    sys.excepthook = functools.partial(except_hook, quiet='-q' in sys.argv)


def post_arg_parse_setup(config: IssuerConfig) -> str:
    """Setup logging after command line arguments are parsed.

    :returns: path of the debug log file
    """
    file_handler, file_path = setup_log_file_handler(config, constants.LOG_FILE_NAME, FILE_FMT)

    root_logger = logging.getLogger()
    memory_handler = stderr_handler = None
    for handler in root_logger.handlers:
        if isinstance(handler, MemoryHandler):
            memory_handler = handler
        elif isinstance(handler, logging.StreamHandler):
            stderr_handler = handler
    msg = 'Previously configured logging handlers have been removed!'
    assert memory_handler is not None and stderr_handler is not None, msg

    root_logger.addHandler(file_handler)
    root_logger.removeHandler(memory_handler)
    memory_handler.setTarget(file_handler)
    memory_handler.flush(force=True)
    memory_handler.close()

    if config.quiet:
        level = constants.QUIET_LOGGING_LEVEL
    else:
        level = max(constants.DEFAULT_LOGGING_LEVEL - config.verbose_count * 10, logging.DEBUG)
    stderr_handler.setLevel(level)
    logger.debug('Root logging level set at %d', level)

    sys.excepthook = functools.partial(except_hook, quiet=config.quiet)
    return file_path


def setup_log_file_handler(config: IssuerConfig, logfile: str,
                           fmt: str) -> tuple[logging.Handler, str]:
    """Setup file debug logging.

    :returns: file handler and absolute path to the log file
    :raises errors.Error: if the logs directory is not writable
    """
    log_file_path = os.path.join(config.logs_dir, logfile)
    try:
        util.make_or_verify_dir(config.logs_dir, 0o700)
        handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=2 ** 20, backupCount=constants.MAX_LOG_BACKUPS)
    except OSError as error:
        raise errors.Error('Unable to write the debug log {0}: {1}'.format(log_file_path, error))
    # rotate on each invocation, one file per run
    handler.doRollover()
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt=fmt))
    return handler, log_file_path


class MemoryHandler(logging.handlers.MemoryHandler):
    """Buffers logging messages in memory until flushed with ``force=True``."""
    def __init__(self, target: Optional[logging.Handler] = None,
                 capacity: int = 10000) -> None:
        # capacity doesn't matter because shouldFlush() is overridden
        super().__init__(capacity, target=target)

    def close(self) -> None:
        """Close the memory handler, but don't set the target to None."""
        target = getattr(self, 'target')
        super().close()
        self.target = target

    def flush(self, force: bool = False) -> None:  # pylint: disable=arguments-differ
        """Flush the buffer if force=True, noop otherwise."""
        if force:
            super().flush()

    def shouldFlush(self, record: logging.LogRecord) -> bool:
        return False


def except_hook(exc_type: Type[BaseException], exc_value: BaseException,
                trace: Optional[TracebackType], quiet: bool) -> None:
    """Logs fatal exceptions and exits with a nonzero status.

    An `errors.Error` is reported with its message only, the traceback goes
    to the debug log.
    """
    exc_info = (exc_type, exc_value, trace)
    if exc_type is KeyboardInterrupt:
        logger.error('Exiting due to user request.')
        sys.exit(1)
    logger.debug('Exiting abnormally:', exc_info=exc_info)
    if issubclass(exc_type, errors.Error):
        logger.error(str(exc_value))
    else:
        logger.error('An unexpected error occurred:')
        logger.error(''.join(traceback.format_exception_only(exc_type, exc_value)).rstrip())
    if not quiet:
        print('See the debug log for more details.', file=sys.stderr)
    sys.exit(1)
