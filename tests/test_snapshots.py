# Copyright Red Hat
#
# tests/test_snapshots.py - Snapshot orchestration tests
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import unittest.mock
import logging

log = logging.getLogger()

import lvmbackup.manager._snapshots as snapshots
from lvmbackup.manager._resources import ResourceTracker
from lvmbackup import ConfigurationError, LvmBackupCalloutError, SnapshotOperationError

from tests import make_lv

_SNAPSHOTS = "lvmbackup.manager._snapshots"


class EligibilityTests(unittest.TestCase):
    """Test snapshot eligibility rules"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)

    def test_eligible_volumes(self):
        for lv_attr in ("-wi-ao----", "-wi-a-----", "Vwi-aotz--", "owi-aos---", "rwi-aor---"):
            with self.subTest(lv_attr=lv_attr):
                self.assertIsNone(snapshots.check_eligibility(lv_attr))

    def test_rejection_reasons(self):
        test_values = (
            ("swi-a-s---", "snapshots"),
            ("Swi-a-s---", "snapshots"),
            ("-wC-ao----", "locked volumes"),
            ("pwi-aom---", "pvmoved volumes"),
            ("Owi-ao----", "origin that has a merging snapshot"),
            ("Cwi-aoC---", "cache"),
            ("twi-aotz--", "thin pool type volumes"),
            ("Twi-ao----", "thin pool type volumes"),
            ("mwi-aom---", "mirror subvolumes or mirrors"),
            ("iwi-aor---", "raid subvolumes"),
        )
        for lv_attr, reason in test_values:
            with self.subTest(lv_attr=lv_attr):
                self.assertEqual(snapshots.check_eligibility(lv_attr), reason)

    def test_first_matching_rule_wins(self):
        # A locked CoW snapshot is reported as a snapshot.
        self.assertEqual(snapshots.check_eligibility("swL-a-s---"), "snapshots")
        # A pvmove volume also has a mirror target.
        self.assertEqual(snapshots.check_eligibility("pwi-aom---"), "pvmoved volumes")
        # A locked thin pool is reported as locked.
        self.assertEqual(snapshots.check_eligibility("twI-aotz--"), "locked volumes")

    def test_classification_is_total(self):
        for lv_attr in ("", "-", "??????????", "Qwi-ao----", "-wi"):
            with self.subTest(lv_attr=lv_attr):
                result = snapshots.check_eligibility(lv_attr)
                self.assertTrue(result is None or isinstance(result, str))

    def test_parse_ignore_volume(self):
        self.assertEqual(snapshots.parse_ignore_volume("vg0/swap"), ("vg0", "swap"))
        self.assertEqual(snapshots.parse_ignore_volume(" vg0/tmp "), ("vg0", "tmp"))

    def test_parse_ignore_volume_malformed_raises(self):
        for value in ("swap", "vg0/", "/swap", "vg0/a/b", ""):
            with self.subTest(value=value):
                with self.assertRaises(ConfigurationError):
                    snapshots.parse_ignore_volume(value)


class SnapshotOrchestratorTests(unittest.TestCase):
    """Test stale snapshot removal and snapshot creation"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self.tracker = ResourceTracker()

        patchers = {
            "create_snapshot": None,
            "remove_snapshot_volume": None,
            "vg_free_space": 1073741824,
        }
        self.mocks = {}
        for name, retval in patchers.items():
            patcher = unittest.mock.patch(f"{_SNAPSHOTS}.{name}", return_value=retval)
            self.mocks[name] = patcher.start()
            self.addCleanup(patcher.stop)

        patcher = unittest.mock.patch(
            f"{_SNAPSHOTS}.lv_path", side_effect=lambda vg, lv: f"/dev/{vg}/{lv}"
        )
        self.mocks["lv_path"] = patcher.start()
        self.addCleanup(patcher.stop)

    def test_empty_prefix_raises(self):
        with self.assertRaises(ConfigurationError):
            snapshots.SnapshotOrchestrator(self.tracker, prefix="")

    def test_remove_stale_snapshots(self):
        volumes = [
            make_lv("root"),
            make_lv("bak_snap_data", lv_attr="swi-a-s---", origin="data"),
            make_lv("other_snap", lv_attr="swi-a-s---", origin="root"),
            make_lv("thin_snap", lv_attr="Vwi-a-tz-k", origin="thin1"),
        ]
        orch = snapshots.SnapshotOrchestrator(self.tracker)
        removed = orch.remove_stale_snapshots(volumes)
        self.assertEqual(
            removed,
            ["/dev/vg0/bak_snap_data", "/dev/vg0/other_snap", "/dev/vg0/thin_snap"],
        )
        self.assertEqual(self.mocks["remove_snapshot_volume"].call_count, 3)

    def test_remove_stale_snapshot_by_prefix_alone(self):
        volumes = [make_lv("bak_snap_data"), make_lv("data")]
        orch = snapshots.SnapshotOrchestrator(self.tracker)
        self.assertEqual(orch.remove_stale_snapshots(volumes), ["/dev/vg0/bak_snap_data"])
        self.mocks["remove_snapshot_volume"].assert_called_once_with("/dev/vg0/bak_snap_data")

    def test_remove_stale_snapshots_failure_propagates(self):
        self.mocks["remove_snapshot_volume"].side_effect = SnapshotOperationError("busy")
        orch = snapshots.SnapshotOrchestrator(self.tracker)
        with self.assertRaises(SnapshotOperationError):
            orch.remove_stale_snapshots([make_lv("bak_snap_data")])

    def test_create_snapshots(self):
        volumes = [
            make_lv("root"),
            make_lv("swap"),
            make_lv("pool0", lv_attr="twi-aotz--", segtype="thin-pool"),
            make_lv("thin1", lv_attr="Vwi-aotz--", segtype="thin"),
        ]
        orch = snapshots.SnapshotOrchestrator(
            self.tracker, ignore_volumes=[("vg0", "swap")]
        )
        created = orch.create_snapshots(volumes)

        self.assertEqual([snap.name for snap in created], ["bak_snap_root", "bak_snap_thin1"])
        self.assertEqual([snap.index for snap in created], [0, 1])
        self.assertEqual(created[0].origin, "root")
        self.assertEqual(created[0].devpath, "/dev/vg0/bak_snap_root")

        calls = self.mocks["create_snapshot"].call_args_list
        self.assertEqual(
            calls,
            [
                unittest.mock.call("/dev/vg0/root", "bak_snap_root", thin=False),
                unittest.mock.call("/dev/vg0/thin1", "bak_snap_thin1", thin=True),
            ],
        )
        self.assertEqual(
            [held.devpath for held in self.tracker.snapshots],
            ["/dev/vg0/bak_snap_root", "/dev/vg0/bak_snap_thin1"],
        )

    def test_create_snapshots_logs_rejection(self):
        orch = snapshots.SnapshotOrchestrator(self.tracker)
        with self.assertLogs("lvmbackup.manager._snapshots", level="WARNING") as cm:
            created = orch.create_snapshots([make_lv("pool0", lv_attr="twi-aotz--")])
        self.assertEqual(created, [])
        self.assertIn(
            "Can't create snapshot from volume vg0/pool0: "
            "Snapshots of thin pool type volumes are not supported.",
            cm.output[0],
        )
        self.mocks["create_snapshot"].assert_not_called()

    def test_create_snapshots_custom_prefix(self):
        orch = snapshots.SnapshotOrchestrator(self.tracker, prefix="nightly-")
        created = orch.create_snapshots([make_lv("data")])
        self.assertEqual(created[0].name, "nightly-data")

    def test_create_snapshots_failure_keeps_earlier_registrations(self):
        self.mocks["create_snapshot"].side_effect = [None, SnapshotOperationError("full")]
        orch = snapshots.SnapshotOrchestrator(self.tracker)
        with self.assertRaises(SnapshotOperationError):
            orch.create_snapshots([make_lv("root"), make_lv("data")])
        self.assertEqual(
            [held.devpath for held in self.tracker.snapshots], ["/dev/vg0/bak_snap_root"]
        )

    def test_snapshot_registered_when_path_lookup_fails(self):
        self.mocks["lv_path"].side_effect = LvmBackupCalloutError("lvs failed")
        orch = snapshots.SnapshotOrchestrator(self.tracker)
        with self.assertRaises(LvmBackupCalloutError):
            orch.create_snapshots([make_lv("data")])
        self.mocks["create_snapshot"].assert_called_once()
        self.assertEqual(
            [held.devpath for held in self.tracker.snapshots], ["/dev/vg0/bak_snap_data"]
        )
        self.assertEqual(self.tracker.snapshots[0].origin, "data")

    def test_free_space_query_failure_is_not_fatal(self):
        self.mocks["vg_free_space"].side_effect = LvmBackupCalloutError("vgs command not found")
        orch = snapshots.SnapshotOrchestrator(self.tracker)
        with unittest.mock.patch.object(snapshots._log, "isEnabledFor", return_value=True):
            with self.assertLogs("lvmbackup.manager._snapshots", level="WARNING") as cm:
                created = orch.create_snapshots([make_lv("data")])
        self.assertEqual([snap.name for snap in created], ["bak_snap_data"])
        self.assertIn("vgs command not found", cm.output[0])
        self.mocks["create_snapshot"].assert_called_once()

    def test_free_space_not_queried_without_debug(self):
        orch = snapshots.SnapshotOrchestrator(self.tracker)
        with unittest.mock.patch.object(snapshots._log, "isEnabledFor", return_value=False):
            orch.create_snapshots([make_lv("data")])
        self.mocks["vg_free_space"].assert_not_called()
        self.mocks["create_snapshot"].assert_called_once()
