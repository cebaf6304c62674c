# Copyright Red Hat
#
# lvmbackup/manager/_signals.py - LVM backup signal handling
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Helpers for blocking and unblocking signal delivery, and for turning
SIGTERM into an orderly unwind.
"""
from signal import (
    SIG_BLOCK,
    SIG_SETMASK,
    SIG_UNBLOCK,
    SIGINT,
    SIGTERM,
    getsignal,
    pthread_sigmask,
    signal,
)
from functools import wraps
import logging

_log = logging.getLogger(__name__)
_log_debug = _log.debug

_TERMINATION_SIGNALS = {SIGINT, SIGTERM}


def block_signals():
    """
    Block termination signals on entry to a cleanup critical section.

    :returns: The signal mask in effect before blocking.
    """
    _log_debug("Blocking termination signals %s", _TERMINATION_SIGNALS)
    return pthread_sigmask(SIG_BLOCK, _TERMINATION_SIGNALS)


def unblock_signals(saved_mask=None):
    """
    Restore ``saved_mask`` on leaving a critical section, delivering any
    termination signal that arrived meanwhile. Without a saved mask the
    termination signals are unblocked unconditionally.
    """
    if saved_mask is None:
        _log_debug("Unblocking termination signals %s", _TERMINATION_SIGNALS)
        pthread_sigmask(SIG_UNBLOCK, _TERMINATION_SIGNALS)
        return
    _log_debug("Restoring signal mask %s", saved_mask)
    pthread_sigmask(SIG_SETMASK, saved_mask)


def suspend_signals(func):
    """
    Run ``func`` with termination signals held back. Nested calls keep the
    signals blocked until the outermost call returns.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        saved_mask = block_signals()
        try:
            return func(*args, **kwargs)
        finally:
            unblock_signals(saved_mask)

    return wrapper


def _sigterm_handler(signum, _frame):
    _log_debug("Received signal %d: exiting", signum)
    raise SystemExit(128 + signum)


def install_sigterm_handler():
    """
    Convert SIGTERM into ``SystemExit`` so that pending ``finally`` blocks
    and context managers run before the process exits.

    :returns: The previously installed SIGTERM handler.
    """
    previous = getsignal(SIGTERM)
    signal(SIGTERM, _sigterm_handler)
    return previous


def restore_sigterm_handler(previous):
    """
    Restore the SIGTERM handler returned by ``install_sigterm_handler()``.
    """
    if previous is not None:
        signal(SIGTERM, previous)
