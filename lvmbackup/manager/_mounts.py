# Copyright Red Hat
#
# lvmbackup/manager/_mounts.py - LVM backup mount support
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Partition discovery, mounting and per-partition backup of snapshots.
"""
from subprocess import run, CalledProcessError
from typing import List, Optional
from os.path import dirname
import tempfile
import logging
import os

import magic

from lvmbackup import (
    LVMBACKUP_SUBSYSTEM_MOUNTS,
    LvmBackupCalloutError,
    MountError,
    UmountError,
    PartitionMapError,
    MountedPartition,
    Snapshot,
)

from ._kpartx import kpartx_add, kpartx_list, partition_devpath

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_MOUNTS}, **kwargs)


#: Prefix for temporary mount directories.
MOUNT_DIR_PREFIX = "volume-backup."

#: File system type passed to mount when detection fails.
FSTYPE_AUTO = "auto"


def _merge_options(opts_a, opts_b):
    """
    Merge two comma-separated mount options strings.

    :param opts_a: The first set of options.
    :param opts_b: The second set of options.
    :returns: Merged "opts_a,opts_b"
    :rtype: ``str``
    """
    return ",".join(filter(None, [opts_a, opts_b]))


def get_device_fstype(devpath: str) -> str:
    """
    Determine the file system type for the device at `devpath`.

    :param devpath: The path to the device.
    :returns: The file system type, 'xfs', 'ext4', etc., or the empty string
              if it cannot be determined.
    :rtype: str
    """
    env = dict(os.environ, LC_ALL="C", LANG="C")
    blkid_cmd = ["blkid", "--match-tag=TYPE", "--output=value", devpath]
    _log_debug_mounts("Calling %s", " ".join(blkid_cmd))
    try:
        result = run(
            blkid_cmd,
            capture_output=True,
            encoding="utf8",
            check=True,
            env=env,
        )
    except (FileNotFoundError, CalledProcessError) as err:
        _log_debug_mounts("Could not determine fstype for %s: %s", devpath, err)
        return ""
    return result.stdout.strip()


def _mount(what: str, where: str, readonly: bool = True):
    """
    Call the mount program to mount a file system.

    XFS file systems are mounted with "nouuid" since the snapshot shares
    its UUID with the origin.

    :param what: The source for the mount operation.
    :param where: The path to the mount point.
    :param readonly: Mount the filesystem read-only.
    """
    options = "ro" if readonly else "defaults"
    fstype = get_device_fstype(what)
    if fstype == "xfs":
        options = _merge_options(options, "nouuid")

    mount_cmd = ["mount", "--types", fstype or FSTYPE_AUTO]
    mount_cmd.extend(["--options", options, what, where])
    _log_debug_mounts("Calling %s", " ".join(mount_cmd))

    try:
        run(mount_cmd, check=True, capture_output=True, encoding="utf8")
    except FileNotFoundError as err:
        raise LvmBackupCalloutError(f"mount command not found: {err}") from err
    except CalledProcessError as err:
        raise MountError(what, where, err.returncode, (err.stderr or "").strip()) from err


def _umount(where: str):
    """
    Call the umount program to unmount a file system.

    :param where: The mount point to be unmounted.
    """
    umount_cmd = ["umount", where]
    _log_debug_mounts("Calling %s", " ".join(umount_cmd))
    try:
        run(umount_cmd, check=True, capture_output=True, encoding="utf8")
    except FileNotFoundError as err:
        raise LvmBackupCalloutError(f"umount command not found: {err}") from err
    except CalledProcessError as err:
        raise UmountError(where, err.returncode, (err.stderr or "").strip()) from err


def _describe_device(devpath: str) -> List[str]:
    """
    Collect diagnostic information about the device node at ``devpath``:
    the listing of its directory, its ``os.stat`` result and a file type
    description.
    """
    info = []
    devdir = dirname(devpath)
    try:
        info.append(f"{devdir}: {' '.join(sorted(os.listdir(devdir)))}")
    except OSError as err:
        info.append(f"Cannot list {devdir}: {err}")

    try:
        info.append(f"{devpath}: {os.stat(devpath)}")
    except OSError as err:
        info.append(f"Cannot stat {devpath}: {err}")

    # c9s magic does not have magic.error
    if hasattr(magic, "error"):
        magic_errors = (magic.error, OSError, ValueError)
    else:
        magic_errors = (OSError, ValueError)
    try:
        info.append(f"{devpath}: {magic.detect_from_filename(devpath).name}")
    except magic_errors as err:
        info.append(f"Cannot detect file type of {devpath}: {err}")
    return info


def _log_top_level(mount_dir: str, devpath: str):
    try:
        entries = sorted(os.listdir(mount_dir))
    except OSError as err:
        _log_warn("Cannot list contents of %s: %s", mount_dir, err)
        return
    _log_info("Contents of the volume %s:", devpath)
    for entry in entries:
        _log_info("  %s", entry)


class PartitionMounter:
    """
    Mount each partition of a snapshot (or the whole snapshot when it has
    no partition table) and hand the mounted tree to an ``Archiver``.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        tracker,
        archiver,
        dest_prefix: str,
        partitions_rw: bool = False,
        ignore_mount_error: bool = False,
    ):
        """
        Initialise a new ``PartitionMounter``.

        :param tracker: The ``ResourceTracker`` recording mappings and mounts.
        :param archiver: The ``Archiver`` used to copy each mounted tree.
        :param dest_prefix: The normalized destination path prefix.
        :param partitions_rw: Map and mount partitions read-write.
        :param ignore_mount_error: Log mount failures and continue.
        """
        self.tracker = tracker
        self.archiver = archiver
        self.dest_prefix = dest_prefix
        self.partitions_rw = partitions_rw
        self.ignore_mount_error = ignore_mount_error

    def _discover_partitions(self, devpath: str) -> List[str]:
        try:
            return kpartx_list(devpath)
        except PartitionMapError as err:
            _log_error("Failed to list partitions of %s: %s", devpath, err)
            for line in _describe_device(devpath):
                _log_error("  %s", line)
            raise

    def _mount_and_backup(self, part: MountedPartition, dest_path: str) -> Optional[str]:
        try:
            _mount(part.devpath, part.mount_dir, readonly=not self.partitions_rw)
        except MountError as err:
            os.rmdir(part.mount_dir)
            if not self.ignore_mount_error:
                raise
            _log_warn(
                "Could not mount partition device %s to directory %s: %s",
                part.devpath,
                part.mount_dir,
                err,
            )
            return None
        except BaseException:
            os.rmdir(part.mount_dir)
            raise

        self.tracker.register_mount(part.mount_dir)
        _log_top_level(part.mount_dir, part.devpath)

        dest = self.archiver.archive(part.mount_dir, dest_path)

        _umount(part.mount_dir)
        self.tracker.clear_mount()
        os.rmdir(part.mount_dir)
        return dest

    def _backup_device(self, devpath: str, index: int, dest_path: str) -> Optional[str]:
        mount_dir = tempfile.mkdtemp(prefix=MOUNT_DIR_PREFIX)
        _log_debug_mounts("Created mount directory %s for %s", mount_dir, devpath)
        part = MountedPartition(devpath, mount_dir, index)
        return self._mount_and_backup(part, dest_path)

    def backup_snapshot(self, snapshot: Snapshot) -> List[str]:
        """
        Back up every partition of ``snapshot``.

        :param snapshot: The ``Snapshot`` to back up.
        :returns: The list of destinations written.
        :raises: ``PartitionMapError`` if partitions cannot be discovered
                 or mapped. ``MountError`` if a mount fails and mount
                 errors are not ignored. ``ArchiveError`` if a copy fails.
        """
        devpath = snapshot.devpath
        dest_base = f"{self.dest_prefix}{snapshot.vg_name}-{snapshot.origin}"
        _log_info(
            "Process snapshot volume path %s from volume %s/%s",
            devpath,
            snapshot.vg_name,
            snapshot.origin,
        )

        partitions = self._discover_partitions(devpath)
        destinations = []

        if not partitions:
            _log_info("No partitions to mount in %s: mounting whole volume", devpath)
            dest = self._backup_device(devpath, 0, dest_base)
            return [dest] if dest else []

        kpartx_add(devpath, readonly=not self.partitions_rw)
        self.tracker.register_kpartx_mapping(devpath)

        for index, name in enumerate(partitions, start=1):
            dest = self._backup_device(
                partition_devpath(name), index, f"{dest_base}-{index}"
            )
            if dest:
                destinations.append(dest)
        return destinations
