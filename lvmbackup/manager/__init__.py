# Copyright Red Hat
#
# lvmbackup/manager/__init__.py - LVM backup manager
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the backup manager.
"""

from ._manager import (  # noqa: F401, F403
    BackupManager,
    BackupConfig,
    LVMBACKUP_CFG_PATH,
    normalize_dest_prefix,
    check_tools,
    check_privileges,
)
from ._attrs import VolumeAttributes, decode_lv_attr, describe_lv_attr
from ._snapshots import (
    ELIGIBILITY_RULES,
    SnapshotOrchestrator,
    check_eligibility,
    parse_ignore_volume,
)
from ._resources import ResourceTracker, CleanupController
from ._mounts import PartitionMounter
from ._archive import Archiver, TarArchiver, RsyncArchiver, make_archiver

__all__ = [
    "BackupManager",
    "BackupConfig",
    "LVMBACKUP_CFG_PATH",
    "normalize_dest_prefix",
    "check_tools",
    "check_privileges",
    "VolumeAttributes",
    "decode_lv_attr",
    "describe_lv_attr",
    "ELIGIBILITY_RULES",
    "SnapshotOrchestrator",
    "check_eligibility",
    "parse_ignore_volume",
    "ResourceTracker",
    "CleanupController",
    "PartitionMounter",
    "Archiver",
    "TarArchiver",
    "RsyncArchiver",
    "make_archiver",
]
