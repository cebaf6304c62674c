# Copyright Red Hat
#
# lvmbackup/manager/_snapshots.py - Backup snapshot orchestration
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot eligibility rules, stale snapshot removal and snapshot creation.
"""
from typing import Iterable, List, Optional, Set, Tuple
from os.path import join as path_join
import logging

from lvmbackup import (
    LVMBACKUP_SUBSYSTEM_MANAGER,
    DEFAULT_SNAPSHOT_PREFIX,
    DEV_PREFIX,
    ConfigurationError,
    LvmBackupCalloutError,
    LogicalVolume,
    Snapshot,
    size_fmt,
)

from ._attrs import (
    describe_lv_attr,
    lv_attr_is_cow,
    lv_attr_is_locked,
    lv_attr_is_pvmove,
    lv_attr_is_merging_origin,
    lv_attr_is_any_cache,
    lv_attr_is_thin_type,
    lv_attr_is_thin_volume,
    lv_attr_is_mirror_type_or_pvmove,
    lv_attr_is_raid_type,
    lv_attr_is_raid,
)
from ._lvm2 import (
    create_snapshot,
    lv_path,
    remove_snapshot_volume,
    vg_free_space,
)
from ._signals import suspend_signals

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_MANAGER}, **kwargs)


def _is_thin_pool_type(lv_attr):
    return lv_attr_is_thin_type(lv_attr) and not lv_attr_is_thin_volume(lv_attr)


def _is_raid_subvolume(lv_attr):
    return lv_attr_is_raid_type(lv_attr) and not lv_attr_is_raid(lv_attr)


#: Ordered (predicate, reason) pairs: the first matching rule rejects the
#: volume.
#
# Snapshots of cache volumes are possible with lvcreate, but cache volumes
# stay rejected until that is confirmed to work with the mount step.
ELIGIBILITY_RULES = (
    (lv_attr_is_cow, "snapshots"),
    (lv_attr_is_locked, "locked volumes"),
    (lv_attr_is_pvmove, "pvmoved volumes"),
    (lv_attr_is_merging_origin, "origin that has a merging snapshot"),
    (lv_attr_is_any_cache, "cache"),
    (_is_thin_pool_type, "thin pool type volumes"),
    (lv_attr_is_mirror_type_or_pvmove, "mirror subvolumes or mirrors"),
    (_is_raid_subvolume, "raid subvolumes"),
)


def check_eligibility(lv_attr: str) -> Optional[str]:
    """
    Test whether a snapshot may be taken of a volume with attributes
    ``lv_attr``.

    :param lv_attr: The ``lv_attr`` code of the volume.
    :returns: ``None`` if the volume is eligible, or the reason for the
              rejection of the first matching rule.
    """
    for predicate, reason in ELIGIBILITY_RULES:
        if predicate(lv_attr):
            return reason
    return None


def parse_ignore_volume(value: str) -> Tuple[str, str]:
    """
    Parse a ``VOLUME_GROUP/VOLUME_NAME`` exclusion entry.

    :param value: The exclusion entry string.
    :returns: A ``(vg_name, lv_name)`` tuple.
    :raises: ``ConfigurationError`` if the entry is malformed.
    """
    parts = value.strip().split("/")
    if len(parts) != 2 or not all(parts):
        raise ConfigurationError(
            f"Volume name '{value}' must be in format VOLUME_GROUP/VOLUME_NAME"
        )
    return (parts[0], parts[1])


def snapshot_name(prefix: str, lv_name: str) -> str:
    """
    Return the backup snapshot name for the volume named ``lv_name``.
    """
    return f"{prefix}{lv_name}"


class SnapshotOrchestrator:
    """
    Remove stale backup snapshots and create new snapshots for all
    eligible logical volumes.
    """

    def __init__(
        self,
        tracker,
        prefix: str = DEFAULT_SNAPSHOT_PREFIX,
        ignore_volumes: Iterable[Tuple[str, str]] = (),
    ):
        """
        Initialise a new ``SnapshotOrchestrator``.

        :param tracker: The ``ResourceTracker`` that created snapshots are
                        registered with.
        :param prefix: The snapshot name prefix.
        :param ignore_volumes: ``(vg_name, lv_name)`` pairs that are never
                               snapshotted.
        """
        if not prefix:
            raise ConfigurationError("Snapshot prefix cannot be empty")
        self.tracker = tracker
        self.prefix = prefix
        self.ignore_volumes: Set[Tuple[str, str]] = set(ignore_volumes)
        self.snapshots: List[Snapshot] = []

    def is_stale_snapshot(self, lv: LogicalVolume) -> bool:
        """
        Return ``True`` if ``lv`` is a snapshot left over from an earlier
        run: it carries the snapshot prefix, is a CoW snapshot, or has an
        origin.
        """
        return (
            lv.lv_name.startswith(self.prefix)
            or lv_attr_is_cow(lv.lv_attr)
            or bool(lv.origin)
        )

    def remove_stale_snapshots(self, volumes: Iterable[LogicalVolume]) -> List[str]:
        """
        Remove all stale snapshots found in ``volumes``.

        :returns: The list of removed device paths.
        :raises: ``SnapshotOperationError`` if a snapshot cannot be removed
                 even after dropping its partition mappings.
        """
        removed = []
        for lv in volumes:
            if not self.is_stale_snapshot(lv):
                continue
            _log_info("Remove old snapshot %s (%s)", lv.lv_path, lv.full_name)
            remove_snapshot_volume(lv.lv_path)
            removed.append(lv.lv_path)
        return removed

    def create_snapshots(self, volumes: Iterable[LogicalVolume]) -> List[Snapshot]:
        """
        Create a backup snapshot of every eligible volume in ``volumes``.

        Each snapshot is registered with the tracker as soon as it exists.

        :returns: The list of created ``Snapshot`` objects in creation order.
        :raises: ``SnapshotOperationError`` if a snapshot cannot be created.
        """
        created = []
        for lv in volumes:
            if (lv.vg_name, lv.lv_name) in self.ignore_volumes:
                _log_info("Ignore volume %s", lv.full_name)
                continue

            reason = check_eligibility(lv.lv_attr)
            if reason:
                _log_warn(
                    "Can't create snapshot from volume %s: "
                    "Snapshots of %s are not supported.",
                    lv.full_name,
                    reason,
                )
                continue

            created.append(self._create_snapshot(lv))
        return created

    def _log_free_space(self, vg_name: str):
        if not _log.isEnabledFor(logging.DEBUG):
            return
        try:
            free = vg_free_space(vg_name)
        except LvmBackupCalloutError as err:
            _log_warn("Could not query free space of volume group %s: %s", vg_name, err)
            return
        _log_debug_manager("Volume group %s free space: %s", vg_name, size_fmt(free))

    @suspend_signals
    def _create_and_register(self, lv: LogicalVolume, name: str, thin: bool):
        create_snapshot(lv.lv_path, name, thin=thin)
        # Tracked by its /dev/VG/LV path before any further LVM query.
        self.tracker.register_snapshot(
            path_join(DEV_PREFIX, lv.vg_name, name), lv.vg_name, lv.lv_name
        )

    def _create_snapshot(self, lv: LogicalVolume) -> Snapshot:
        name = snapshot_name(self.prefix, lv.lv_name)
        thin = lv_attr_is_thin_type(lv.lv_attr)

        _log_info("Create snapshot %s/%s from volume %s", lv.vg_name, name, lv.full_name)
        for line in describe_lv_attr(lv.lv_attr):
            _log_info("  %s", line)
        if not thin:
            self._log_free_space(lv.vg_name)

        self._create_and_register(lv, name, thin)
        devpath = lv_path(lv.vg_name, name)

        snapshot = Snapshot(name, lv.vg_name, devpath, lv.lv_name, len(self.snapshots))
        self.snapshots.append(snapshot)
        return snapshot
