# Copyright Red Hat
#
# lvmbackup/manager/_resources.py - Held resource tracking and cleanup
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Tracking of the snapshots, partition mappings and mounts held by a backup
run, and the cleanup that releases them.
"""
from typing import List, Optional, Tuple
import collections
import logging
import os

from lvmbackup import (
    LVMBACKUP_SUBSYSTEM_MANAGER,
    LvmBackupError,
    LvmBackupStateError,
    CleanupError,
)

from ._kpartx import kpartx_delete
from ._lvm2 import remove_snapshot_volume
from ._mounts import _umount
from ._signals import suspend_signals

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_MANAGER}, **kwargs)


#: A snapshot logical volume held by the current run.
HeldSnapshot = collections.namedtuple("HeldSnapshot", ["devpath", "vg_name", "origin"])


class ResourceTracker:
    """
    Registry of resources acquired by a backup run.

    Resources are appended as they are acquired and drained in bulk when
    they are released. At most one mount may be live at a time.
    """

    def __init__(self):
        self._mount_dir: Optional[str] = None
        self._kpartx_mappings: List[str] = []
        self._snapshots: List[HeldSnapshot] = []

    @property
    def mount_dir(self) -> Optional[str]:
        """The currently live mount directory, or ``None``."""
        return self._mount_dir

    @property
    def kpartx_mappings(self) -> Tuple[str, ...]:
        """Device paths that currently have kpartx partition mappings."""
        return tuple(self._kpartx_mappings)

    @property
    def snapshots(self) -> Tuple[HeldSnapshot, ...]:
        """Snapshot volumes created by this run and not yet removed."""
        return tuple(self._snapshots)

    def register_mount(self, mount_dir: str):
        """
        Record ``mount_dir`` as the live mount.

        :raises: ``LvmBackupStateError`` if another mount is already live.
        """
        if self._mount_dir is not None:
            raise LvmBackupStateError(
                f"Cannot register mount {mount_dir}: "
                f"{self._mount_dir} is still mounted"
            )
        _log_debug_manager("Registered mount %s", mount_dir)
        self._mount_dir = mount_dir

    def clear_mount(self):
        """Forget the live mount."""
        self._mount_dir = None

    def register_kpartx_mapping(self, devpath: str):
        """Record that partition mappings exist for ``devpath``."""
        _log_debug_manager("Registered kpartx mapping for %s", devpath)
        self._kpartx_mappings.append(devpath)

    def clear_kpartx_mappings(self):
        """Forget all partition mappings."""
        self._kpartx_mappings = []

    def register_snapshot(self, devpath: str, vg_name: str, origin: str):
        """Record a snapshot volume created by this run."""
        _log_debug_manager("Registered snapshot %s (origin %s/%s)", devpath, vg_name, origin)
        self._snapshots.append(HeldSnapshot(devpath, vg_name, origin))

    def clear_snapshots(self):
        """Forget all snapshot volumes."""
        self._snapshots = []

    def __bool__(self):
        return bool(self._mount_dir or self._kpartx_mappings or self._snapshots)


class CleanupController:
    """
    Release every resource held by a ``ResourceTracker``.

    The drain runs in a fixed order: the live mount first, then partition
    mappings, then snapshot volumes. Every step is attempted regardless of
    earlier failures, which are logged and never raised. Termination signals
    are blocked for the duration of the drain.

    The controller may be used as a context manager, in which case the
    drain runs on every exit from the ``with`` block.
    """

    def __init__(self, tracker: ResourceTracker):
        self.tracker = tracker
        self.errors: List[CleanupError] = []

    def _cleanup_error(self, err: CleanupError):
        _log_error("Cleanup error: %s", err)
        self.errors.append(err)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is not None:
            _log_debug_manager("Cleaning up after %s: %s", exc_type.__name__, exc_value)
        self.cleanup()
        return False

    def _release_mount(self):
        mount_dir = self.tracker.mount_dir
        if mount_dir is None:
            return
        _log_info("Unmounting %s", mount_dir)
        try:
            _umount(mount_dir)
        except LvmBackupError as err:
            self._cleanup_error(CleanupError(f"Failed to unmount {mount_dir}: {err}"))
        try:
            os.rmdir(mount_dir)
        except OSError as err:
            self._cleanup_error(
                CleanupError(f"Failed to remove mount directory {mount_dir}: {err}")
            )
        self.tracker.clear_mount()

    def _release_kpartx_mappings(self):
        for devpath in self.tracker.kpartx_mappings:
            _log_info("Removing partition mappings for %s", devpath)
            try:
                kpartx_delete(devpath)
            except LvmBackupError as err:
                self._cleanup_error(
                    CleanupError(f"Failed to remove partition mappings: {err}")
                )
        self.tracker.clear_kpartx_mappings()

    def _release_snapshots(self):
        for held in self.tracker.snapshots:
            _log_info("Removing snapshot %s", held.devpath)
            try:
                remove_snapshot_volume(held.devpath)
            except LvmBackupError as err:
                self._cleanup_error(
                    CleanupError(
                        f"Failed to remove snapshot {held.devpath} of "
                        f"{held.vg_name}/{held.origin}: {err}"
                    )
                )
        self.tracker.clear_snapshots()

    @suspend_signals
    def cleanup(self):
        """
        Release all resources held by the tracker. Calling ``cleanup()``
        with nothing held is a no-op.
        """
        if not self.tracker:
            _log_debug_manager("Nothing to clean up")
            return
        self._release_mount()
        self._release_kpartx_mappings()
        self._release_snapshots()
