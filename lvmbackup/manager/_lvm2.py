# Copyright Red Hat
#
# lvmbackup/manager/_lvm2.py - LVM2 volume enumeration and callouts
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
LVM2 callouts: logical volume enumeration and snapshot create/remove.
"""
from subprocess import run, CalledProcessError
from os.path import join as path_join
from os import environ
from typing import List
import logging

from lvmbackup import (
    LVMBACKUP_SUBSYSTEM_LVM,
    DEV_PREFIX,
    LvmBackupCalloutError,
    SnapshotOperationError,
    PartitionMapError,
    LogicalVolume,
)

from ._kpartx import kpartx_delete

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_lvm(msg, *args, **kwargs):
    """A wrapper for lvm subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_LVM}, **kwargs)


# Global LVM2 report options
LVM_OPTIONS = "--options"
LVM_UNITS = "--units"
LVM_BYTES = "b"
LVM_NO_HEADINGS = "--noheadings"
LVM_SEPARATOR = "--separator"
LVM_REPORT_SEP = "|"

# lvs report options
LVS_CMD = "lvs"
LVS_FIELD_OPTIONS = "lv_name,vg_name,lv_path,lv_size,lv_attr,origin,segtype"
LVS_NR_FIELDS = len(LVS_FIELD_OPTIONS.split(","))
LVS_LV_PATH = "lv_path"

# vgs report options
VGS_CMD = "vgs"
VGS_FIELD_OPTIONS = "vg_name,vg_free"

# lvcreate command options
LVCREATE_CMD = "lvcreate"
LVCREATE_SNAPSHOT = "--snapshot"
LVCREATE_NAME = "--name"
LVCREATE_EXTENTS = "--extents"
LVCREATE_HALF_FREE = "50%FREE"
LVCREATE_SETACTIVATIONSKIP = "--setactivationskip"
LVCREATE_ACTIVATIONSKIP_NO = "n"

# lvremove command options
LVREMOVE_CMD = "lvremove"
LVREMOVE_YES = "--yes"

# LVM2 environment variables to filter out
_LVM_ENV_FILTER = [
    "LVM_OUT_FD",
    "LVM_ERR_FD",
    "LVM_REPORT_FD",
    "LVM_COMMAND_PROFILE",
    "LVM_RUN_BY_DMEVENTD",
    "LVM_SUPPRESS_FD_WARNINGS",
    "LVM_SUPPRESS_SYSLOG",
    "LVM_VG_NAME",
    "LVM_LOG_FILE_EPOCH",
    "LVM_LOG_FILE_MAX_LINES",
    "LVM_EXPECTED_EXIT_STATUS",
    "DM_ABORT_ON_INTERNAL_ERRORS",
    "DM_DISABLE_UDEV",
]


def _sanitize_environment():
    env = environ.copy()
    for var in _LVM_ENV_FILTER:
        env.pop(var, None)
    env["LC_ALL"] = "C"
    return env


def _decode_stderr(err):
    """
    Strip the stderr member of a ``CalledProcessError`` and return the
    result as a string.

    :param err: A ``CalledProcessError`` like exception.
    :returns: A stripped string representation of the exception's stderr
              member.
    """
    return (err.stderr or "").strip()


def _run(cmd_args, error_class=LvmBackupCalloutError):
    """
    Run an LVM2 command with a sanitized environment and return the
    completed process.

    :param cmd_args: The command and its arguments.
    :param error_class: The exception type raised on failure.
    :raises: ``error_class`` if the command is missing or fails.
    """
    _log_debug_lvm("Calling %s", " ".join(cmd_args))
    try:
        return run(
            cmd_args,
            capture_output=True,
            check=True,
            encoding="utf8",
            env=_sanitize_environment(),
        )
    except FileNotFoundError as err:
        raise error_class(f"{cmd_args[0]} command not found: {err}") from err
    except CalledProcessError as err:
        raise error_class(
            f"Error calling {cmd_args[0]} (status={err.returncode}): "
            f"{_decode_stderr(err)}"
        ) from err


def _parse_size(value: str) -> int:
    """
    Parse an LVM2 byte size value such as ``"10737418240B"``.
    """
    return int(value.strip().rstrip("B"))


def parse_lvs_line(line: str) -> LogicalVolume:
    """
    Parse one row of ``lvs`` output produced with ``LVS_FIELD_OPTIONS``.

    :param line: A report row using ``LVM_REPORT_SEP`` as separator.
    :returns: A new ``LogicalVolume``.
    :raises: ``LvmBackupCalloutError`` if the row is malformed.
    """
    fields = [field.strip() for field in line.strip().split(LVM_REPORT_SEP)]
    if len(fields) != LVS_NR_FIELDS:
        raise LvmBackupCalloutError(f"Malformed {LVS_CMD} report row: '{line}'")
    (lv_name, vg_name, lv_path, lv_size, lv_attr, origin, segtype) = fields
    try:
        size = _parse_size(lv_size)
    except ValueError as err:
        raise LvmBackupCalloutError(
            f"Malformed {LVS_CMD} size value '{lv_size}' for {vg_name}/{lv_name}"
        ) from err
    return LogicalVolume(lv_name, vg_name, lv_path, size, lv_attr, origin, segtype)


def list_logical_volumes() -> List[LogicalVolume]:
    """
    Enumerate all logical volumes known to LVM2.

    Volumes are returned in the order ``lvs`` reports them. Either the
    whole report is returned or an exception is raised: a partial list is
    never returned.

    :returns: A list of ``LogicalVolume`` objects.
    :raises: ``LvmBackupCalloutError`` if ``lvs`` fails or its output cannot
             be parsed.
    """
    lvs_cmd_args = [
        LVS_CMD,
        LVM_NO_HEADINGS,
        LVM_SEPARATOR,
        LVM_REPORT_SEP,
        LVM_UNITS,
        LVM_BYTES,
        LVM_OPTIONS,
        LVS_FIELD_OPTIONS,
    ]
    lvs_cmd = _run(lvs_cmd_args)
    volumes = [
        parse_lvs_line(line) for line in lvs_cmd.stdout.splitlines() if line.strip()
    ]
    _log_debug_lvm("Found %d logical volumes", len(volumes))
    return volumes


def lv_path(vg_name: str, lv_name: str) -> str:
    """
    Return the device path of the logical volume ``vg_name/lv_name``.
    """
    lvs_cmd_args = [
        LVS_CMD,
        LVM_NO_HEADINGS,
        LVM_OPTIONS,
        LVS_LV_PATH,
        f"{vg_name}/{lv_name}",
    ]
    lvs_cmd = _run(lvs_cmd_args)
    path = lvs_cmd.stdout.strip()
    if not path:
        path = path_join(DEV_PREFIX, vg_name, lv_name)
        _log_debug_lvm("Empty lv_path for %s/%s: using %s", vg_name, lv_name, path)
    return path


def vg_free_space(vg_name: str) -> int:
    """
    Return the free space in bytes for the volume group named ``vg_name``.

    :raises: ``LvmBackupCalloutError`` if ``vgs`` fails or the volume group
             is not reported.
    """
    vgs_cmd_args = [
        VGS_CMD,
        LVM_NO_HEADINGS,
        LVM_SEPARATOR,
        LVM_REPORT_SEP,
        LVM_UNITS,
        LVM_BYTES,
        LVM_OPTIONS,
        VGS_FIELD_OPTIONS,
        vg_name,
    ]
    vgs_cmd = _run(vgs_cmd_args)
    for line in vgs_cmd.stdout.splitlines():
        fields = [field.strip() for field in line.strip().split(LVM_REPORT_SEP)]
        if len(fields) == 2 and fields[0] == vg_name:
            return _parse_size(fields[1])
    raise LvmBackupCalloutError(f"Volume group {vg_name} not found")


def create_snapshot(origin_path: str, snapshot_name: str, thin: bool = False):
    """
    Create a snapshot named ``snapshot_name`` of the logical volume at
    ``origin_path``.

    Thin snapshots are created without an explicit size and share the
    origin's pool. Thick (CoW) snapshots are allocated half of the free
    space of the volume group. Activation skip is disabled so that the new
    snapshot is active and can be mapped immediately.

    :raises: ``SnapshotOperationError`` if ``lvcreate`` fails.
    """
    lvcreate_cmd_args = [LVCREATE_CMD]
    if not thin:
        lvcreate_cmd_args.extend([LVCREATE_EXTENTS, LVCREATE_HALF_FREE])
    lvcreate_cmd_args.extend(
        [
            LVCREATE_SNAPSHOT,
            LVCREATE_NAME,
            snapshot_name,
            LVCREATE_SETACTIVATIONSKIP,
            LVCREATE_ACTIVATIONSKIP_NO,
            origin_path,
        ]
    )
    _run(lvcreate_cmd_args, error_class=SnapshotOperationError)


def remove_logical_volume(devpath: str):
    """
    Remove the logical volume at ``devpath``.

    :raises: ``SnapshotOperationError`` if ``lvremove`` fails.
    """
    _run([LVREMOVE_CMD, LVREMOVE_YES, devpath], error_class=SnapshotOperationError)


def remove_snapshot_volume(devpath: str):
    """
    Remove the snapshot logical volume at ``devpath``.

    If the first removal attempt fails, any kpartx partition mapping still
    holding the device open is dropped and removal is retried once.

    :raises: ``SnapshotOperationError`` if the retry also fails.
    """
    try:
        remove_logical_volume(devpath)
        return
    except SnapshotOperationError as err:
        _log_warn("Could not remove %s: %s; removing partition mappings", devpath, err)

    try:
        kpartx_delete(devpath)
    except PartitionMapError as err:
        _log_debug_lvm("Ignoring kpartx error for %s: %s", devpath, err)

    remove_logical_volume(devpath)
