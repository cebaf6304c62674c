# Copyright Red Hat
#
# lvmbackup/manager/_manager.py - LVM backup manager
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Backup configuration, environment checks and the top-level backup run.
"""
from dataclasses import dataclass, field
from configparser import ConfigParser, Error as ConfigParserError
from os.path import exists, isdir, join
from stat import S_ISDIR, S_ISLNK
from typing import List, Optional, Tuple
from shutil import which
from functools import wraps
import fcntl
import logging
import os

from lvmbackup import (
    LVMBACKUP_SUBSYSTEM_MANAGER,
    LVMBACKUP_RUNTIME_DIR,
    DEFAULT_SNAPSHOT_PREFIX,
    DEFAULT_COMPRESSION,
    DEFAULT_DEST_PREFIX,
    LvmBackupSystemError,
    LvmBackupBusyError,
    ConfigurationError,
    PrivilegeError,
    ToolUnavailableError,
    LogicalVolume,
)

from ._archive import COMPRESSION_EXTENSIONS, make_archiver
from ._lvm2 import list_logical_volumes
from ._mounts import PartitionMounter
from ._resources import CleanupController, ResourceTracker
from ._signals import install_sigterm_handler, restore_sigterm_handler
from ._snapshots import SnapshotOrchestrator, parse_ignore_volume

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_MANAGER}, **kwargs)


#: Base directory for lvmbackup configuration
_LVMBACKUP_CFG_DIR = "/etc/lvmbackup"

#: Main configuration file path
LVMBACKUP_CFG_PATH = join(_LVMBACKUP_CFG_DIR, "lvmbackup.conf")

#: Main configuration file section
_LVMBACKUP_CFG_BACKUP = "Backup"

# Configuration keys
_CFG_IGNORE_VOLUMES = "IgnoreVolumes"
_CFG_SNAPSHOT_PREFIX = "SnapshotPrefix"
_CFG_IGNORE_MOUNT_ERROR = "IgnoreMountError"
_CFG_PARTITIONS_RW = "PartitionsReadWrite"
_CFG_OVERWRITE = "Overwrite"
_CFG_DEST_PREFIX = "DestPrefix"
_CFG_RSYNC = "Rsync"
_CFG_COMPRESSION = "Compression"

#: Directory for the run lock file
_LVMBACKUP_LOCK_DIR = LVMBACKUP_RUNTIME_DIR

#: Permissions for lock directory
_LVMBACKUP_LOCK_DIR_MODE = 0o700

#: Name of the run lock file
_LVMBACKUP_LOCK_FILE = "lvmbackup.lock"

#: Programs that must be present for any backup run.
REQUIRED_TOOLS = ["lvs", "lvcreate", "lvremove", "kpartx", "mount", "umount"]

#: Programs that are used when present.
OPTIONAL_TOOLS = ["vgs"]


@dataclass
class BackupConfig:
    """
    Backup run configuration.
    """

    ignore_volumes: List[Tuple[str, str]] = field(default_factory=list)
    snapshot_prefix: str = DEFAULT_SNAPSHOT_PREFIX
    ignore_mount_error: bool = False
    partitions_rw: bool = False
    overwrite: bool = False
    dest_prefix: str = DEFAULT_DEST_PREFIX
    rsync: bool = False
    compression: str = DEFAULT_COMPRESSION

    @classmethod
    def from_file(cls, config_file: str) -> "BackupConfig":
        """
        Load ``BackupConfig`` from an INI-style configuration file located at
        ``config_file``.

        :param config_file: path to lvmbackup.conf
        :type config_file: ``str``.
        :returns: A ``BackupConfig`` instance initialised from ``config_file``.
        :rtype: ``BackupConfig``
        :raises: ``ConfigurationError`` if the file cannot be parsed.
        """
        if not exists(config_file):
            return BackupConfig()

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        try:
            cfg.read([config_file])
        except ConfigParserError as err:
            raise ConfigurationError(
                f"Failed to parse configuration file {config_file}: {err}"
            ) from err

        if not cfg.has_section(_LVMBACKUP_CFG_BACKUP):
            return BackupConfig()

        section = cfg[_LVMBACKUP_CFG_BACKUP]
        try:
            ignore_volumes = [
                parse_ignore_volume(vol)
                for vol in section.get(_CFG_IGNORE_VOLUMES, "").split(",")
                if vol.strip()
            ]
            return BackupConfig(
                ignore_volumes=ignore_volumes,
                snapshot_prefix=section.get(
                    _CFG_SNAPSHOT_PREFIX, DEFAULT_SNAPSHOT_PREFIX
                ).strip(),
                ignore_mount_error=section.getboolean(_CFG_IGNORE_MOUNT_ERROR, False),
                partitions_rw=section.getboolean(_CFG_PARTITIONS_RW, False),
                overwrite=section.getboolean(_CFG_OVERWRITE, False),
                dest_prefix=section.get(_CFG_DEST_PREFIX, DEFAULT_DEST_PREFIX).strip(),
                rsync=section.getboolean(_CFG_RSYNC, False),
                compression=section.get(_CFG_COMPRESSION, DEFAULT_COMPRESSION).strip(),
            )
        except ValueError as err:
            raise ConfigurationError(
                f"Invalid value in configuration file {config_file}: {err}"
            ) from err

    def validate(self):
        """
        Check the configuration for consistency.

        :raises: ``ConfigurationError`` if the snapshot prefix is empty, an
                 exclusion entry is malformed or the compression is unknown.
        """
        if not self.snapshot_prefix:
            raise ConfigurationError("Snapshot prefix cannot be empty")
        for entry in self.ignore_volumes:
            if len(entry) != 2 or not all(entry):
                raise ConfigurationError(
                    f"Volume name '{'/'.join(entry)}' must be in format "
                    "VOLUME_GROUP/VOLUME_NAME"
                )
        if not self.rsync and self.compression not in COMPRESSION_EXTENSIONS:
            raise ConfigurationError(
                f"Unknown compression '{self.compression}' "
                f"(expected one of {', '.join(COMPRESSION_EXTENSIONS)})"
            )


def normalize_dest_prefix(prefix: str) -> str:
    """
    Normalize the destination path prefix.

    An empty prefix means the current directory. A prefix ending in a path
    separator names a directory that is created if absent. An existing
    directory without a trailing separator has one appended. Anything else
    is used as a file name stem.

    :param prefix: The destination prefix given by the user.
    :returns: The normalized prefix.
    :raises: ``LvmBackupSystemError`` if the directory cannot be created.
    """
    if not prefix:
        return DEFAULT_DEST_PREFIX
    if prefix.endswith(os.sep):
        if not isdir(prefix):
            _log_info("Creating destination directory %s", prefix)
            try:
                os.makedirs(prefix, exist_ok=True)
            except OSError as err:
                raise LvmBackupSystemError(
                    f"Failed to create destination directory {prefix}: {err}"
                ) from err
        return prefix
    if isdir(prefix):
        return prefix + os.sep
    return prefix


def check_tools(config: BackupConfig):
    """
    Verify that the external programs needed by ``config`` are installed.

    :raises: ``ToolUnavailableError`` if a required program is missing.
    """
    backend, other = ("rsync", "tar") if config.rsync else ("tar", "rsync")
    for cmd in REQUIRED_TOOLS + [backend]:
        if not which(cmd):
            raise ToolUnavailableError(f"Required command '{cmd}' is not available")
    for cmd in OPTIONAL_TOOLS + [other]:
        if not which(cmd):
            _log_warn("Optional command '%s' is not available", cmd)


def check_privileges():
    """
    Verify that the backup is running as root.

    :raises: ``PrivilegeError`` if not running as root.
    """
    if os.geteuid() != 0:
        raise PrivilegeError("lvmbackup must be run as the root user")


def _check_lock_dir(dirpath: str) -> str:
    """
    Check for the presence of the lvmbackup runtime lock directory and
    create it if necessary.
    """
    if exists(dirpath):
        try:
            st = os.lstat(dirpath)
        except OSError as err:
            raise LvmBackupSystemError(
                f"Failed to stat lock directory {dirpath}: {err}"
            ) from err
        if S_ISLNK(st.st_mode):
            raise LvmBackupSystemError(
                f"Lock directory {dirpath} is a symlink (not secure)"
            )
        if not S_ISDIR(st.st_mode):
            raise LvmBackupSystemError(
                f"Lock directory {dirpath} exists but is not a directory"
            )
    try:
        os.makedirs(dirpath, mode=_LVMBACKUP_LOCK_DIR_MODE, exist_ok=True)
    except OSError as err:
        raise LvmBackupSystemError(
            f"Failed to create lock directory {dirpath}: {err}"
        ) from err
    return dirpath


def _lock_run(lockdir: str) -> int:
    """
    Take the run lock.

    :returns: A file descriptor open on the lock file.
    """

    def cleanup():
        try:
            os.close(fd)
        except OSError as err:
            _log_debug("Exception closing lock fd %d: %s", fd, err)

    lockfile = join(lockdir, _LVMBACKUP_LOCK_FILE)
    _log_debug_manager("Locking backup run via %s", lockfile)

    # Use a persistent lock file; coordinate via flock only.
    try:
        flags = os.O_RDWR | os.O_CREAT | os.O_CLOEXEC
        fd = os.open(lockfile, flags, 0o600)
    except OSError as err:
        raise LvmBackupSystemError(
            f"Failed to create run lockfile {lockfile}: {err}"
        ) from err

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as err:
        cleanup()
        raise LvmBackupBusyError(
            f"Another backup is already running (lock held at '{lockfile}')"
        ) from err
    except OSError as err:  # pragma: no cover
        cleanup()
        raise LvmBackupSystemError(
            f"Failed to take exclusive lock on run lockfile {lockfile}: {err}"
        ) from err

    try:
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("utf8"))
    except OSError:  # pragma: no cover
        pass

    return fd


def _unlock_run(lockdir: str, fd: int):
    """
    Release the run lock held on the open file descriptor ``fd``.
    """
    lockfile = join(lockdir, _LVMBACKUP_LOCK_FILE)
    _log_debug_manager("Unlocking backup run (%s)", lockfile)
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError as err:
        raise LvmBackupSystemError(
            f"Failed to release lock on run lockfile {lockfile}: {err}"
        ) from err
    finally:
        try:
            os.close(fd)
        except OSError:  # pragma: no cover
            pass


# pylint: disable=protected-access
def _with_run_lock(func):
    """
    Decorator for ``BackupManager`` methods that must not run concurrently
    with another backup.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        # args[0] is self
        lockdir = _check_lock_dir(args[0]._lock_dir)
        fd = -1
        try:
            fd = _lock_run(lockdir)
            ret = func(*args, **kwargs)
        finally:
            if fd >= 0:
                _unlock_run(lockdir, fd)
        return ret

    return wrapper


class BackupManager:
    """
    Top-level interface for a backup run.
    """

    def __init__(self, config: Optional[BackupConfig] = None, lock_dir: str = ""):
        """
        Initialise a new ``BackupManager``.

        :param config: The ``BackupConfig`` for this run.
        :param lock_dir: The directory holding the run lock file.
        :raises: ``ConfigurationError`` if ``config`` is invalid.
        """
        self.config = config or BackupConfig()
        self.config.validate()
        self._lock_dir = lock_dir or _LVMBACKUP_LOCK_DIR
        self.tracker = ResourceTracker()

    def list_volumes(self) -> List[LogicalVolume]:
        """
        Return all logical volumes known to LVM2.
        """
        return list_logical_volumes()

    def _backup(self) -> List[str]:
        config = self.config
        dest_prefix = normalize_dest_prefix(config.dest_prefix)
        _log_info("Destination path prefix: %s", dest_prefix)

        orchestrator = SnapshotOrchestrator(
            self.tracker,
            prefix=config.snapshot_prefix,
            ignore_volumes=config.ignore_volumes,
        )
        mounter = PartitionMounter(
            self.tracker,
            make_archiver(config),
            dest_prefix,
            partitions_rw=config.partitions_rw,
            ignore_mount_error=config.ignore_mount_error,
        )

        orchestrator.remove_stale_snapshots(list_logical_volumes())
        snapshots = orchestrator.create_snapshots(list_logical_volumes())
        _log_debug_manager("Created %d snapshots", len(snapshots))

        destinations = []
        for snapshot in snapshots:
            destinations.extend(mounter.backup_snapshot(snapshot))
        return destinations

    @_with_run_lock
    def run(self) -> List[str]:
        """
        Perform a backup run: remove stale snapshots, snapshot every
        eligible volume and copy each snapshot's partitions to the
        destination. All resources acquired during the run are released
        before this method returns or raises.

        :returns: The list of destinations written.
        """
        previous = install_sigterm_handler()
        try:
            with CleanupController(self.tracker):
                destinations = self._backup()
        finally:
            restore_sigterm_handler(previous)
        _log_info("Backup finished")
        return destinations
