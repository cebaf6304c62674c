# Copyright Red Hat
#
# lvmbackup/manager/_kpartx.py - device-mapper partition mappings
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Helpers for querying, creating and removing kpartx partition mappings.
"""
from subprocess import run, CalledProcessError
from os.path import join as path_join
from typing import List
import logging

from lvmbackup import (
    LVMBACKUP_SUBSYSTEM_MOUNTS,
    DEV_MAPPER_PREFIX,
    PartitionMapError,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_warn = _log.warning


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_MOUNTS}, **kwargs)


KPARTX_CMD = "kpartx"
KPARTX_LIST = "-l"
KPARTX_ADD = "-av"
KPARTX_ADD_READONLY = "-avr"
KPARTX_DELETE = "-vd"


def _run_kpartx(args: List[str]):
    """
    Run kpartx with ``args`` and return the completed process.

    :raises: ``PartitionMapError`` if kpartx cannot be run or fails.
    """
    kpartx_cmd = [KPARTX_CMD] + args
    _log_debug_mounts("Calling %s", " ".join(kpartx_cmd))
    try:
        return run(kpartx_cmd, check=True, capture_output=True, encoding="utf8")
    except FileNotFoundError as err:
        raise PartitionMapError(f"{KPARTX_CMD} command not found: {err}") from err
    except CalledProcessError as err:
        raise PartitionMapError(
            f"{' '.join(kpartx_cmd)} failed (status={err.returncode}): "
            f"{(err.stderr or '').strip()}"
        ) from err


def parse_kpartx_list(output: str) -> List[str]:
    """
    Parse the output of ``kpartx -l`` and return the partition mapping
    names in table order.

    Each mapping line starts with the mapping name; blank lines and lines
    starting with white space are ignored.
    """
    names = []
    for line in output.splitlines():
        if not line or line[0].isspace():
            continue
        names.append(line.split()[0])
    return names


def kpartx_list(devpath: str) -> List[str]:
    """
    Return the names of the partition mappings kpartx would create for
    ``devpath``, in partition table order. An empty list means the device
    has no partition table.

    :param devpath: The block device to inspect.
    :raises: ``PartitionMapError`` if kpartx fails.
    """
    kpartx = _run_kpartx([KPARTX_LIST, devpath])
    names = parse_kpartx_list(kpartx.stdout)
    _log_debug_mounts("Found %d partitions on %s: %s", len(names), devpath, names)
    return names


def kpartx_add(devpath: str, readonly: bool = True):
    """
    Create device-mapper mappings for all partitions of ``devpath``.

    :param devpath: The block device to map.
    :param readonly: Create read-only mappings.
    :raises: ``PartitionMapError`` if kpartx fails.
    """
    _run_kpartx([KPARTX_ADD_READONLY if readonly else KPARTX_ADD, devpath])


def kpartx_delete(devpath: str):
    """
    Remove all partition mappings for ``devpath``.

    :param devpath: The block device whose mappings should be removed.
    :raises: ``PartitionMapError`` if kpartx fails.
    """
    _run_kpartx([KPARTX_DELETE, devpath])


def partition_devpath(name: str) -> str:
    """
    Return the device path for the partition mapping ``name``.
    """
    return path_join(DEV_MAPPER_PREFIX, name)
