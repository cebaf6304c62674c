# Copyright Red Hat
#
# lvmbackup/command.py - LVM backup command interface
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``lvmbackup.command`` module provides both the lvmbackup command
line interface infrastructure, and a simple procedural interface to the
``lvmbackup`` library modules.

The procedural interface is used by the ``lvmbackup`` command line tool,
and may be used by application programs, or interactively in the
Python shell by users who do not require the full manager API.
"""
from argparse import ArgumentParser
from logging.handlers import SysLogHandler
from os.path import basename, exists
import logging
import sys

from lvmbackup import (
    LVMBACKUP_DEBUG_MANAGER,
    LVMBACKUP_DEBUG_COMMAND,
    LVMBACKUP_DEBUG_LVM,
    LVMBACKUP_DEBUG_MOUNTS,
    LVMBACKUP_DEBUG_ARCHIVE,
    LVMBACKUP_DEBUG_ALL,
    LVMBACKUP_SUBSYSTEM_COMMAND,
    LvmBackupError,
    SubsystemFilter,
    set_debug_mask,
    __version__,
)
from lvmbackup.manager import (
    BackupManager,
    BackupConfig,
    LVMBACKUP_CFG_PATH,
    check_privileges,
    check_tools,
    describe_lv_attr,
    parse_ignore_volume,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None

#: Path to the syslog socket
_SYSLOG_SOCKET = "/dev/log"

#: Tag for syslog messages
_SYSLOG_TAG = "lvmbackup"


def list_volumes(manager: BackupManager, out=None):
    """
    Print each logical volume and its decoded attributes.

    :param manager: The ``BackupManager`` to query.
    :param out: The stream to write to (default ``sys.stdout``).
    :returns: The number of volumes listed.
    """
    out = out or sys.stdout
    volumes = manager.list_volumes()
    for lv in volumes:
        print(lv, file=out)
        for line in describe_lv_attr(lv.lv_attr):
            print(f"  {line}", file=out)
        print(file=out)
    return len(volumes)


def backup(config: BackupConfig):
    """
    Run a backup with configuration ``config``.

    :param config: The ``BackupConfig`` to use.
    :returns: The list of destinations written.
    """
    check_tools(config)
    manager = BackupManager(config)
    return manager.run()


def _merge_cmd_args(config: BackupConfig, cmd_args) -> BackupConfig:
    """
    Apply command line overrides to a ``BackupConfig`` loaded from file.
    """
    if cmd_args.ignore_volume:
        config.ignore_volumes.extend(
            parse_ignore_volume(vol) for vol in cmd_args.ignore_volume
        )
    if cmd_args.snapshot_prefix is not None:
        config.snapshot_prefix = cmd_args.snapshot_prefix
    if cmd_args.dest_prefix is not None:
        config.dest_prefix = cmd_args.dest_prefix
    if cmd_args.ignore_mount_error:
        config.ignore_mount_error = True
    if cmd_args.part_rw:
        config.partitions_rw = True
    if cmd_args.overwrite:
        config.overwrite = True
    if cmd_args.rsync:
        config.rsync = True
    if cmd_args.compression is not None:
        config.compression = cmd_args.compression
    return config


def _list_cmd(config: BackupConfig, _cmd_args):
    """
    List logical volumes and their attributes.
    """
    list_volumes(BackupManager(config))
    return 0


def _backup_cmd(config: BackupConfig, _cmd_args):
    """
    Back up all eligible logical volumes.
    """
    destinations = backup(config)
    for dest in destinations:
        _log_info("Wrote %s", dest)
    _log_debug_command("Backup wrote %d destinations", len(destinations))
    return 0


def setup_logging(cmd_args):
    """
    Set up lvmbackup logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    lvmbackup_log = logging.getLogger("lvmbackup")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    lvmbackup_log.setLevel(logging.DEBUG if cmd_args.log_file else level)
    if lvmbackup_log.hasHandlers():
        lvmbackup_log.handlers.clear()

    # Subsystem log filtering
    _lvmbackup_subsystem_filter = SubsystemFilter("lvmbackup")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler()

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_lvmbackup_subsystem_filter)

    lvmbackup_log.addHandler(_CONSOLE_HANDLER)

    if cmd_args.log_file:
        file_handler = logging.FileHandler(cmd_args.log_file, encoding="utf8")
        file_handler.setLevel(min(level, logging.INFO))
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
        )
        file_handler.addFilter(_lvmbackup_subsystem_filter)
        lvmbackup_log.addHandler(file_handler)

    if exists(_SYSLOG_SOCKET):
        syslog_handler = SysLogHandler(address=_SYSLOG_SOCKET)
        syslog_handler.setLevel(logging.WARNING)
        syslog_handler.setFormatter(
            logging.Formatter(f"{_SYSLOG_TAG}: %(levelname)s - %(message)s")
        )
        lvmbackup_log.addHandler(syslog_handler)


def shutdown_logging():
    """
    Shut down lvmbackup logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "manager": LVMBACKUP_DEBUG_MANAGER,
        "command": LVMBACKUP_DEBUG_COMMAND,
        "lvm": LVMBACKUP_DEBUG_LVM,
        "mounts": LVMBACKUP_DEBUG_MOUNTS,
        "archive": LVMBACKUP_DEBUG_ARCHIVE,
        "all": LVMBACKUP_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _add_backup_args(parser):
    """
    Add backup option arguments.
    """
    parser.add_argument(
        "-l",
        "--list-volumes",
        action="store_true",
        help="List logical volumes and their attributes and exit",
    )
    parser.add_argument(
        "-i",
        "--ignore-volume",
        metavar="VG/LV",
        action="append",
        help="Do not back up the volume VG/LV (may be given more than once)",
    )
    parser.add_argument(
        "--ignore-mount-error",
        action="store_true",
        help="Ignore errors when mounting volumes and continue with other volumes",
    )
    parser.add_argument(
        "-s",
        "--snapshot-prefix",
        metavar="PREFIX",
        type=str,
        help="Prefix for backup snapshot names",
    )
    parser.add_argument(
        "-w",
        "--part-rw",
        action="store_true",
        help="Map and mount partitions read-write",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing archive files",
    )
    parser.add_argument(
        "-p",
        "--dest-prefix",
        metavar="PREFIX",
        type=str,
        help="Destination path prefix (a trailing '/' names a directory)",
    )
    parser.add_argument(
        "--rsync",
        action="store_true",
        help="Mirror volumes with rsync instead of writing tar archives",
    )
    parser.add_argument(
        "--compression",
        metavar="EXT",
        type=str,
        help="Compression suffix for tar archives (default: bz2)",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="PATH",
        type=str,
        default=LVMBACKUP_CFG_PATH,
        help="Path to the configuration file",
    )


def main(args):
    """
    Main entry point for lvmbackup.
    """
    parser = ArgumentParser(
        description="LVM snapshot backup", prog=basename(args[0])
    )

    # Global arguments
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        type=str,
        help="Also write log messages to PATH",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of lvmbackup",
        version=__version__,
    )
    _add_backup_args(parser)

    cmd_args = parser.parse_args(args[1:])

    status = 1

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    setup_logging(cmd_args)

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    func = _list_cmd if cmd_args.list_volumes else _backup_cmd

    def _run():
        check_privileges()
        config = _merge_cmd_args(BackupConfig.from_file(cmd_args.config), cmd_args)
        config.validate()
        return func(config, cmd_args)

    if cmd_args.debug:
        status = _run()
    else:
        try:
            status = _run()
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except LvmBackupError as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


def console_main():
    """
    Console script entry point.
    """
    return main(sys.argv)


# vim: set et ts=4 sw=4 :
