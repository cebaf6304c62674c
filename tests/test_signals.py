# Copyright Red Hat
#
# tests/test_signals.py - Signal handling tests
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging
import signal
import os

log = logging.getLogger()

import lvmbackup.manager._signals as signals


class SignalsTests(unittest.TestCase):
    """Test signal blocking and SIGTERM conversion"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)

    def test_suspend_signals_blocks_and_restores(self):
        @signals.suspend_signals
        def critical():
            return signal.pthread_sigmask(signal.SIG_BLOCK, [])

        mask = critical()
        self.assertIn(signal.SIGTERM, mask)
        self.assertIn(signal.SIGINT, mask)
        self.assertNotIn(signal.SIGTERM, signal.pthread_sigmask(signal.SIG_BLOCK, []))

    def test_suspend_signals_unblocks_on_exception(self):
        @signals.suspend_signals
        def critical():
            raise ValueError("failed")

        with self.assertRaises(ValueError):
            critical()
        self.assertNotIn(signal.SIGINT, signal.pthread_sigmask(signal.SIG_BLOCK, []))

    def test_sigterm_raises_system_exit(self):
        previous = signals.install_sigterm_handler()
        self.addCleanup(signals.restore_sigterm_handler, previous)
        with self.assertRaises(SystemExit) as cm:
            os.kill(os.getpid(), signal.SIGTERM)
        self.assertEqual(cm.exception.code, 128 + signal.SIGTERM)

    def test_restore_sigterm_handler(self):
        previous = signals.install_sigterm_handler()
        signals.restore_sigterm_handler(previous)
        self.assertEqual(signal.getsignal(signal.SIGTERM), previous)

    def test_nested_suspend_keeps_signals_blocked(self):
        @signals.suspend_signals
        def inner():
            return signal.pthread_sigmask(signal.SIG_BLOCK, [])

        @signals.suspend_signals
        def outer():
            inner()
            return signal.pthread_sigmask(signal.SIG_BLOCK, [])

        self.assertIn(signal.SIGTERM, outer())
        self.assertNotIn(signal.SIGTERM, signal.pthread_sigmask(signal.SIG_BLOCK, []))

    def test_unblock_without_saved_mask(self):
        signals.block_signals()
        signals.unblock_signals()
        self.assertNotIn(signal.SIGINT, signal.pthread_sigmask(signal.SIG_BLOCK, []))
