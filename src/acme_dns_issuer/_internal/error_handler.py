"""Registers functions to be called when an issuance attempt ends."""
import functools
import logging
import os
import signal
import threading
import traceback
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Optional
from typing import Type
from typing import Union

from acme_dns_issuer import errors

logger = logging.getLogger(__name__)


# Signals whose default action terminates the process. Challenge records must
# still be removed when one of them interrupts an issuance.
if os.name != "nt":
    _SIGNALS = [signal.SIGTERM]
    for signal_code in [signal.SIGHUP, signal.SIGQUIT,
                        signal.SIGXCPU, signal.SIGXFSZ]:
        if signal.getsignal(signal_code) != signal.SIG_IGN:
            _SIGNALS.append(signal_code)
else:
    _SIGNALS = []


class ErrorHandler:
    """Context manager for running code that must be cleaned up on failure.

    Functions registered on the handler are called, last in first out, when
    an exception (excluding SystemExit) or a signal interrupts the body::

        with ErrorHandler(cleanup_func, *args, **kwargs):
            do_something()

    Each registered function is called exactly once. If one of them raises,
    the exception is logged and the next function is called. Signals received
    while the registered functions run are deferred until they finish.

    Signal handlers can only be installed from the main thread. In any other
    thread the handler still runs its functions on exceptions and regular exit.

    """
    def __init__(self, func: Optional[Callable[..., Any]] = None,
                 *args: Any, **kwargs: Any) -> None:
        self.call_on_regular_exit = False
        self.body_executed = False
        self.funcs: list[Callable[[], Any]] = []
        self.prev_handlers: dict[int, Union[int, None, Callable]] = {}
        self.received_signals: list[int] = []
        if func is not None:
            self.register(func, *args, **kwargs)

    def __enter__(self) -> None:
        self.body_executed = False
        self._set_signal_handlers()

    def __exit__(self, exec_type: Optional[Type[BaseException]],
                 exec_value: Optional[BaseException],
                 trace: Optional[TracebackType]) -> bool:
        self.body_executed = True
        retval = False
        if exec_type is SystemExit:
            return retval
        if exec_type is None:
            if not self.call_on_regular_exit:
                self._reset_signal_handlers()
                return retval
        elif exec_type is errors.SignalExit:
            logger.debug("Encountered signals: %s", self.received_signals)
            retval = True
        else:
            logger.debug("Encountered exception:\n%s", "".join(
                traceback.format_exception(exec_type, exec_value, trace)))

        self._call_registered()
        self._reset_signal_handlers()
        self._call_signals()
        return retval

    def register(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Sets func to be run with the given arguments during cleanup."""
        self.funcs.append(functools.partial(func, *args, **kwargs))

    def _call_registered(self) -> None:
        logger.debug("Calling registered functions")
        while self.funcs:
            try:
                self.funcs[-1]()
            except Exception as exc:  # pylint: disable=broad-except
                output = traceback.format_exception_only(type(exc), exc)
                logger.error("Encountered exception during cleanup: %s",
                             ''.join(output).rstrip())
            self.funcs.pop()

    def _set_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in _SIGNALS:
            prev_handler = signal.getsignal(signum)
            # None means the handler was set outside of Python
            if prev_handler is not None:
                self.prev_handlers[signum] = prev_handler
                signal.signal(signum, self._signal_handler)

    def _reset_signal_handlers(self) -> None:
        for signum, handler in self.prev_handlers.items():
            signal.signal(signum, handler)
        self.prev_handlers.clear()

    def _signal_handler(self, signum: int, unused_frame: Any) -> None:
        """Store the received signal, and stop the body if it is still running."""
        self.received_signals.append(signum)
        if not self.body_executed:
            raise errors.SignalExit

    def _call_signals(self) -> None:
        """Finally call the deferred signals."""
        for signum in self.received_signals:
            logger.debug("Calling signal %s", signum)
            os.kill(os.getpid(), signum)


class ExitHandler(ErrorHandler):
    """Context manager for running code that must always be cleaned up.

    Same usage as `ErrorHandler`, but the registered functions also run
    when the body exits normally.
    """
    def __init__(self, func: Optional[Callable[..., Any]] = None,
                 *args: Any, **kwargs: Any) -> None:
        super().__init__(func, *args, **kwargs)
        self.call_on_regular_exit = True
