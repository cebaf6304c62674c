# Copyright Red Hat
#
# lvmbackup/_lvmbackup.py - LVM backup global definitions
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level lvmbackup package.
"""
from os.path import join as path_join
import collections
import logging
import math

_log = logging.getLogger("lvmbackup")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Lvmbackup debugging subsystem mask
LVMBACKUP_DEBUG_MANAGER = 1
LVMBACKUP_DEBUG_COMMAND = 2
LVMBACKUP_DEBUG_LVM = 4
LVMBACKUP_DEBUG_MOUNTS = 8
LVMBACKUP_DEBUG_ARCHIVE = 16
LVMBACKUP_DEBUG_ALL = (
    LVMBACKUP_DEBUG_MANAGER
    | LVMBACKUP_DEBUG_COMMAND
    | LVMBACKUP_DEBUG_LVM
    | LVMBACKUP_DEBUG_MOUNTS
    | LVMBACKUP_DEBUG_ARCHIVE
)

# Lvmbackup debugging subsystem names
LVMBACKUP_SUBSYSTEM_MANAGER = "lvmbackup.manager"
LVMBACKUP_SUBSYSTEM_COMMAND = "lvmbackup.command"
LVMBACKUP_SUBSYSTEM_LVM = "lvmbackup.lvm"
LVMBACKUP_SUBSYSTEM_MOUNTS = "lvmbackup.mounts"
LVMBACKUP_SUBSYSTEM_ARCHIVE = "lvmbackup.archive"

_DEBUG_MASK_TO_SUBSYSTEM = {
    LVMBACKUP_DEBUG_MANAGER: LVMBACKUP_SUBSYSTEM_MANAGER,
    LVMBACKUP_DEBUG_COMMAND: LVMBACKUP_SUBSYSTEM_COMMAND,
    LVMBACKUP_DEBUG_LVM: LVMBACKUP_SUBSYSTEM_LVM,
    LVMBACKUP_DEBUG_MOUNTS: LVMBACKUP_SUBSYSTEM_MOUNTS,
    LVMBACKUP_DEBUG_ARCHIVE: LVMBACKUP_SUBSYSTEM_ARCHIVE,
}

_debug_subsystems = set()

#: Top-level state directory for the run lock.
LVMBACKUP_RUNTIME_DIR = "/run/lvmbackup"

#: Default prefix for backup snapshot names.
DEFAULT_SNAPSHOT_PREFIX = "bak_snap_"

#: Default compression suffix for archive files.
DEFAULT_COMPRESSION = "bz2"

#: Default destination path prefix (the current directory).
DEFAULT_DEST_PREFIX = "./"

#: Entry excluded from every archive and mirror.
LOST_AND_FOUND = "lost+found"

DEV_PREFIX = "/dev"
DEV_MAPPER_PREFIX = path_join(DEV_PREFIX, "mapper")


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        # Always pass non-DEBUG messages.
        if record.levelno != logging.DEBUG:
            return True

        # Always pass DEBUG messages that aren't for a specific subsystem.
        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``lvmbackup`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    lvmbackup_log = logging.getLogger("lvmbackup")

    for handler in lvmbackup_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``lvmbackup`` package.

    :param mask: the logical OR of the ``LVMBACKUP_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > LVMBACKUP_DEBUG_ALL:
        raise ValueError(f"Invalid lvmbackup debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    lvmbackup_log = logging.getLogger("lvmbackup")
    for handler in lvmbackup_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Lvmbackup exception types
#


class LvmBackupError(Exception):
    """
    Base class for LVM backup errors.
    """


class LvmBackupSystemError(LvmBackupError):
    """
    An error when calling the operating system.
    """


class LvmBackupCalloutError(LvmBackupError):
    """
    An error calling out to an external program.
    """


class LvmBackupBusyError(LvmBackupError):
    """
    Another backup run already holds the run lock.
    """


class LvmBackupStateError(LvmBackupError):
    """
    The state of the resource registry does not allow an operation to
    proceed: for e.g. registering a second live mount.
    """


class ConfigurationError(LvmBackupError):
    """
    An invalid configuration value was given: an empty snapshot prefix or
    a malformed volume exclusion entry.
    """


class PrivilegeError(LvmBackupError):
    """
    The backup is not running with sufficient privileges.
    """


class ToolUnavailableError(LvmBackupError):
    """
    A required external program could not be found.
    """


class SnapshotOperationError(LvmBackupCalloutError):
    """
    Creating or removing a snapshot logical volume failed.
    """


class PartitionMapError(LvmBackupCalloutError):
    """
    Querying, adding or deleting a kpartx partition mapping failed.
    """


class ArchiveError(LvmBackupError):
    """
    Copying a mounted volume to its destination failed, or the destination
    archive already exists and overwriting is not allowed.
    """


class CleanupError(LvmBackupError):
    """
    Releasing a held resource failed during cleanup. Never propagated:
    instances are only logged.
    """


class MountError(LvmBackupError):
    """
    An error performing a mount operation.
    """

    def __init__(self, what: str, where: str, status: int, stderr: str):
        """
        Initialise a new `MountError` exception.

        :param what: The source for the failed mount operation.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program.
        :param stderr: The error message from mount(8).
        """
        self.what, self.where, self.status, self.stderr = what, where, status, stderr
        msg = f"Failed to mount {what} to {where} (status={status}): {stderr}"
        super().__init__(msg)


class UmountError(LvmBackupError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: int, stderr: str):
        """
        Initialise a new `UmountError` exception.

        :param where: The mount point for the failed umount operation.
        :param status: The exit status of the umount(8) program.
        :param stderr: The error message from umount(8).
        """
        self.where, self.status, self.stderr = where, status, stderr
        msg = f"Failed to unmount {where} (status={status}): {stderr}"
        super().__init__(msg)


def size_fmt(value):
    """
    Format a size in bytes as a human readable string.

    :param value: The integer value to format.
    :returns: A human readable string reflecting value.
    """
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB"]
    if value == 0:
        return "0B"
    magnitude = math.floor(math.log(abs(value), 1024))
    val = value / math.pow(1024, magnitude)
    if magnitude > 7:
        return f"{val:.1f}YiB"
    return f"{val:3.1f}{suffixes[magnitude]}"


class LogicalVolume:
    """
    A logical volume as reported by ``lvs``.

    Instances are created fresh for each enumeration and are not modified
    afterwards.
    """

    # pylint: disable=too-many-arguments
    def __init__(self, lv_name, vg_name, lv_path, lv_size, lv_attr, origin, segtype):
        """
        Initialise a new ``LogicalVolume`` object.

        :param lv_name: The logical volume name.
        :param vg_name: The name of the containing volume group.
        :param lv_path: The device path of the logical volume.
        :param lv_size: The size of the logical volume in bytes.
        :param lv_attr: The ten character ``lv_attr`` code.
        :param origin: The origin volume name, or the empty string.
        :param segtype: The segment type reported for the volume.
        """
        self.lv_name = lv_name
        self.vg_name = vg_name
        self.lv_path = lv_path
        self.lv_size = lv_size
        self.lv_attr = lv_attr
        self.origin = origin
        self.segtype = segtype

    def __str__(self):
        return (
            f"LogicalVolume:  {self.lv_name}\n"
            f"VolumeGroup:    {self.vg_name}\n"
            f"DevicePath:     {self.lv_path}\n"
            f"Size:           {size_fmt(self.lv_size)}\n"
            f"Attributes:     {self.lv_attr}\n"
            f"Origin:         {self.origin}\n"
            f"SegmentType:    {self.segtype}"
        )

    def __repr__(self):
        return (
            f"LogicalVolume({self.lv_name!r}, {self.vg_name!r}, {self.lv_path!r}, "
            f"{self.lv_size!r}, {self.lv_attr!r}, {self.origin!r}, {self.segtype!r})"
        )

    def __eq__(self, other):
        if not isinstance(other, LogicalVolume):
            return NotImplemented
        return (
            self.lv_name,
            self.vg_name,
            self.lv_path,
            self.lv_size,
            self.lv_attr,
            self.origin,
            self.segtype,
        ) == (
            other.lv_name,
            other.vg_name,
            other.lv_path,
            other.lv_size,
            other.lv_attr,
            other.origin,
            other.segtype,
        )

    @property
    def full_name(self):
        """
        The ``VG/LV`` name of this volume.
        """
        return f"{self.vg_name}/{self.lv_name}"


class Snapshot:
    """
    A backup snapshot created during the current run.
    """

    # pylint: disable=too-many-arguments
    def __init__(self, name, vg_name, devpath, origin, index):
        """
        Initialise a new ``Snapshot`` object.

        :param name: The snapshot LV name (prefix + origin name).
        :param vg_name: The volume group containing the snapshot.
        :param devpath: The device path of the snapshot LV.
        :param origin: The name of the origin logical volume.
        :param index: The order of creation within this run.
        """
        self.name = name
        self.vg_name = vg_name
        self.devpath = devpath
        self.origin = origin
        self.index = index

    def __str__(self):
        return (
            f"Name:           {self.name}\n"
            f"VolumeGroup:    {self.vg_name}\n"
            f"DevicePath:     {self.devpath}\n"
            f"Origin:         {self.origin}"
        )

    def __repr__(self):
        return (
            f"Snapshot({self.name!r}, {self.vg_name!r}, {self.devpath!r}, "
            f"{self.origin!r}, {self.index!r})"
        )


#: A partition (or whole volume) mounted for the duration of one copy.
MountedPartition = collections.namedtuple(
    "MountedPartition", ["devpath", "mount_dir", "index"]
)


__all__ = [
    "LVMBACKUP_DEBUG_MANAGER",
    "LVMBACKUP_DEBUG_COMMAND",
    "LVMBACKUP_DEBUG_LVM",
    "LVMBACKUP_DEBUG_MOUNTS",
    "LVMBACKUP_DEBUG_ARCHIVE",
    "LVMBACKUP_DEBUG_ALL",
    # Debug logging - subsystem name interface
    "SubsystemFilter",
    "LVMBACKUP_SUBSYSTEM_MANAGER",
    "LVMBACKUP_SUBSYSTEM_COMMAND",
    "LVMBACKUP_SUBSYSTEM_LVM",
    "LVMBACKUP_SUBSYSTEM_MOUNTS",
    "LVMBACKUP_SUBSYSTEM_ARCHIVE",
    "set_debug_mask",
    "get_debug_mask",
    # Paths and defaults
    "LVMBACKUP_RUNTIME_DIR",
    "DEFAULT_SNAPSHOT_PREFIX",
    "DEFAULT_COMPRESSION",
    "DEFAULT_DEST_PREFIX",
    "LOST_AND_FOUND",
    "DEV_PREFIX",
    "DEV_MAPPER_PREFIX",
    # Exceptions
    "LvmBackupError",
    "LvmBackupSystemError",
    "LvmBackupCalloutError",
    "LvmBackupBusyError",
    "LvmBackupStateError",
    "ConfigurationError",
    "PrivilegeError",
    "ToolUnavailableError",
    "SnapshotOperationError",
    "PartitionMapError",
    "ArchiveError",
    "CleanupError",
    "MountError",
    "UmountError",
    # Data model
    "size_fmt",
    "LogicalVolume",
    "Snapshot",
    "MountedPartition",
]
