# Copyright Red Hat
#
# tests/test_command.py - CLI layer tests
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
from contextlib import redirect_stdout
from unittest.mock import MagicMock, patch
import unittest
import logging
import tempfile
import shutil
import io
import os

log = logging.getLogger()

import lvmbackup
import lvmbackup.command as command
from lvmbackup.manager import BackupConfig
from lvmbackup import ArchiveError, ConfigurationError

from tests import MockArgs, make_lv


def _reset_logging():
    logging.getLogger("lvmbackup").handlers.clear()
    logging.getLogger("lvmbackup").setLevel(logging.NOTSET)
    lvmbackup.set_debug_mask(0)


class CommandTestsBase(unittest.TestCase):
    def get_main_args(self):
        """
        Return an argument array (in the form of sys.argv) reflecting the
        ``lvmbackup`` command, with a configuration file that does not
        exist.

        :returns: A list of command arguments.
        """
        return ["lvmbackup", "--config", "/nonexistent/lvmbackup.conf"]

    def get_debug_main_args(self):
        """
        Return an argument array (in the form of sys.argv) reflecting the
        ``lvmbackup`` command, with verbose logging and debug enabled.

        :returns: A list of command arguments.
        """
        return self.get_main_args() + ["-vv", "--debug=all"]


class CommandTests(CommandTestsBase):
    """
    Test command interfaces
    """

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self.addCleanup(_reset_logging)

        patcher = patch("os.geteuid", return_value=0)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_set_debug(self):
        for debug in ("manager", "command", "lvm", "mounts", "archive", "all", "lvm,mounts"):
            with self.subTest(debug=debug):
                command.set_debug(debug)
        self.assertEqual(lvmbackup.get_debug_mask(), lvmbackup.LVMBACKUP_DEBUG_LVM | lvmbackup.LVMBACKUP_DEBUG_MOUNTS)

    def test_set_debug_bad_option(self):
        with self.assertRaises(ValueError):
            command.set_debug("quux")

    def test_main_version(self):
        args = self.get_main_args() + ["--version"]
        with self.assertRaises(SystemExit):
            command.main(args)

    def test_main_bad_debug(self):
        args = self.get_main_args() + ["--debug=quux"]
        with redirect_stdout(io.StringIO()):
            self.assertEqual(command.main(args), 1)

    @patch("os.geteuid", return_value=1000)
    def test_main_non_root(self, _mock_geteuid):
        with patch("lvmbackup.command.backup") as mock_backup:
            self.assertEqual(command.main(self.get_main_args()), 1)
        mock_backup.assert_not_called()

    @patch("lvmbackup.command.BackupManager")
    def test_main_list_volumes(self, mock_manager_cls):
        mock_manager_cls.return_value.list_volumes.return_value = [
            make_lv("data"),
            make_lv("pool0", lv_attr="twi-aotz--", segtype="thin-pool"),
        ]
        out = io.StringIO()
        with redirect_stdout(out):
            self.assertEqual(command.main(self.get_main_args() + ["--list-volumes"]), 0)
        text = out.getvalue()
        self.assertIn("LogicalVolume:  data", text)
        self.assertIn("  Volume type: thin pool", text)
        self.assertIn("Size:           10.0GiB", text)

    @patch("lvmbackup.command.backup")
    def test_main_backup(self, mock_backup):
        mock_backup.return_value = ["./vg0-data-1.tar.bz2"]
        args = self.get_debug_main_args() + [
            "-i",
            "vg0/swap",
            "--ignore-volume",
            "vg0/tmp",
            "-s",
            "nightly_",
            "-w",
            "--overwrite",
            "-p",
            "/srv/backup/",
            "--ignore-mount-error",
        ]
        self.assertEqual(command.main(args), 0)
        config = mock_backup.call_args.args[0]
        self.assertEqual(config.ignore_volumes, [("vg0", "swap"), ("vg0", "tmp")])
        self.assertEqual(config.snapshot_prefix, "nightly_")
        self.assertTrue(config.partitions_rw)
        self.assertTrue(config.overwrite)
        self.assertTrue(config.ignore_mount_error)
        self.assertEqual(config.dest_prefix, "/srv/backup/")
        self.assertFalse(config.rsync)

    @patch("lvmbackup.command.backup")
    def test_main_backup_failure(self, mock_backup):
        mock_backup.side_effect = ArchiveError("File ./vg0-data-1.tar.bz2 already exists")
        with self.assertLogs("lvmbackup.command", level="ERROR") as cm:
            self.assertEqual(command.main(self.get_main_args()), 1)
        self.assertIn("Command failed: File ./vg0-data-1.tar.bz2 already exists", cm.output[0])

    @patch("lvmbackup.command.backup")
    def test_main_backup_failure_debug_propagates(self, mock_backup):
        mock_backup.side_effect = ArchiveError("tar failed")
        with self.assertRaises(ArchiveError):
            command.main(self.get_debug_main_args())

    @patch("lvmbackup.command.backup")
    def test_main_empty_prefix(self, mock_backup):
        self.assertEqual(command.main(self.get_main_args() + ["-s", ""]), 1)
        mock_backup.assert_not_called()

    @patch("lvmbackup.command.backup")
    def test_main_bad_ignore_volume(self, mock_backup):
        self.assertEqual(command.main(self.get_main_args() + ["-i", "swap"]), 1)
        mock_backup.assert_not_called()

    @patch("lvmbackup.command.backup")
    def test_main_log_file(self, mock_backup):
        mock_backup.return_value = []
        tmp_dir = tempfile.mkdtemp(prefix="lvmbackup-test.")
        self.addCleanup(shutil.rmtree, tmp_dir)
        log_file = os.path.join(tmp_dir, "backup.log")
        args = self.get_main_args() + ["--log-file", log_file, "-i", "bad"]
        self.assertEqual(command.main(args), 1)
        with open(log_file, encoding="utf8") as fp:
            self.assertIn("VOLUME_GROUP/VOLUME_NAME", fp.read())

    @patch("lvmbackup.command.backup")
    def test_main_config_file(self, mock_backup):
        mock_backup.return_value = []
        tmp_dir = tempfile.mkdtemp(prefix="lvmbackup-test.")
        self.addCleanup(shutil.rmtree, tmp_dir)
        config_file = os.path.join(tmp_dir, "lvmbackup.conf")
        with open(config_file, "w", encoding="utf8") as fp:
            fp.write("[Backup]\nIgnoreVolumes = vg0/swap\nRsync = yes\n")
        args = ["lvmbackup", "--config", config_file, "-i", "vg0/tmp"]
        self.assertEqual(command.main(args), 0)
        config = mock_backup.call_args.args[0]
        self.assertEqual(config.ignore_volumes, [("vg0", "swap"), ("vg0", "tmp")])
        self.assertTrue(config.rsync)

    def test_merge_cmd_args_defaults(self):
        config = command._merge_cmd_args(BackupConfig(), MockArgs())
        self.assertEqual(config, BackupConfig())

    def test_merge_cmd_args_overrides(self):
        args = MockArgs()
        args.rsync = True
        args.compression = "gz"
        args.dest_prefix = ""
        config = command._merge_cmd_args(BackupConfig(dest_prefix="/srv/"), args)
        self.assertTrue(config.rsync)
        self.assertEqual(config.compression, "gz")
        self.assertEqual(config.dest_prefix, "")

    @patch("lvmbackup.command.check_tools")
    @patch("lvmbackup.command.BackupManager")
    def test_backup(self, mock_manager_cls, mock_check_tools):
        mock_manager_cls.return_value.run.return_value = ["./vg0-data.tar.bz2"]
        config = BackupConfig()
        self.assertEqual(command.backup(config), ["./vg0-data.tar.bz2"])
        mock_check_tools.assert_called_once_with(config)
        mock_manager_cls.assert_called_once_with(config)

    def test_list_volumes(self):
        manager = MagicMock()
        manager.list_volumes.return_value = [make_lv("data")]
        out = io.StringIO()
        self.assertEqual(command.list_volumes(manager, out=out), 1)
        self.assertIn("VolumeGroup:    vg0", out.getvalue())

    def test_invalid_compression_rejected(self):
        config = command._merge_cmd_args(BackupConfig(), MockArgs())
        config.compression = "rar"
        with self.assertRaises(ConfigurationError):
            config.validate()
