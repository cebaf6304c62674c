# Copyright Red Hat
#
# lvmbackup/manager/_archive.py - Archive backends
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Archive backends that copy a mounted file system tree to its destination.
"""
from subprocess import run, CalledProcessError
from abc import ABC, abstractmethod
from os.path import exists
from typing import List
import logging
import os

from lvmbackup import (
    LVMBACKUP_SUBSYSTEM_ARCHIVE,
    DEFAULT_COMPRESSION,
    LOST_AND_FOUND,
    ArchiveError,
    ConfigurationError,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_archive(msg, *args, **kwargs):
    """A wrapper for archive subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_ARCHIVE}, **kwargs)


TAR_CMD = "tar"
RSYNC_CMD = "rsync"

#: Compression suffixes understood by ``tar --auto-compress``.
COMPRESSION_EXTENSIONS = ("bz2", "gz", "xz", "zst", "lz", "lzma", "lzo")


def _with_trailing_sep(path: str) -> str:
    return path if path.endswith(os.sep) else path + os.sep


def _run_archive_cmd(cmd_args: List[str]):
    _log_debug_archive("Calling %s", " ".join(cmd_args))
    try:
        run(cmd_args, check=True, capture_output=True, encoding="utf8")
    except FileNotFoundError as err:
        raise ArchiveError(f"{cmd_args[0]} command not found: {err}") from err
    except CalledProcessError as err:
        raise ArchiveError(
            f"{cmd_args[0]} failed (status={err.returncode}): "
            f"{(err.stderr or '').strip()}"
        ) from err


class Archiver(ABC):
    """
    An abstract backend that copies a mounted tree to a destination.
    """

    #: The external program used by this backend.
    TOOL = None

    @abstractmethod
    def destination(self, dest_path: str) -> str:
        """
        Return the concrete destination written for ``dest_path``.
        """

    @abstractmethod
    def archive(self, source_dir: str, dest_path: str) -> str:
        """
        Copy the tree rooted at ``source_dir`` to ``dest_path``, excluding
        the top-level ``lost+found`` directory.

        :param source_dir: The mounted tree to copy.
        :param dest_path: The destination path without backend suffix.
        :returns: The concrete destination written.
        :raises: ``ArchiveError`` if the copy fails.
        """


class TarArchiver(Archiver):
    """
    Write each tree to a compressed tar archive named
    ``<dest_path>.tar.<compression>``.
    """

    TOOL = TAR_CMD

    def __init__(self, compression: str = DEFAULT_COMPRESSION, overwrite: bool = False):
        if compression not in COMPRESSION_EXTENSIONS:
            raise ConfigurationError(f"Unknown compression: {compression}")
        self.compression = compression
        self.overwrite = overwrite

    def destination(self, dest_path: str) -> str:
        return f"{dest_path}.tar.{self.compression}"

    def archive(self, source_dir: str, dest_path: str) -> str:
        tar_file = self.destination(dest_path)
        _log_info("Backup to tar file %s", tar_file)

        if exists(tar_file):
            if not self.overwrite:
                raise ArchiveError(f"File {tar_file} already exists")
            _log_info("Delete old backup file %s", tar_file)
            try:
                os.unlink(tar_file)
            except OSError as err:
                raise ArchiveError(f"Failed to remove {tar_file}: {err}") from err

        tar_cmd_args = [
            TAR_CMD,
            "--exclude",
            f"./{LOST_AND_FOUND}",
            "--directory",
            source_dir,
            "--create",
            "--auto-compress",
            "--file",
            tar_file,
            ".",
        ]
        _run_archive_cmd(tar_cmd_args)
        return tar_file


class RsyncArchiver(Archiver):
    """
    Mirror each tree into the directory ``<dest_path>/``, deleting files
    that no longer exist in the source.
    """

    TOOL = RSYNC_CMD

    def destination(self, dest_path: str) -> str:
        return _with_trailing_sep(dest_path)

    def archive(self, source_dir: str, dest_path: str) -> str:
        src_dir = _with_trailing_sep(source_dir)
        dest_dir = self.destination(dest_path)
        _log_info("Backup with rsync from %s to %s", src_dir, dest_dir)

        try:
            os.makedirs(dest_dir, exist_ok=True)
        except OSError as err:
            raise ArchiveError(
                f"Failed to create destination directory {dest_dir}: {err}"
            ) from err

        rsync_cmd_args = [
            RSYNC_CMD,
            "--archive",
            "--delete",
            "--exclude",
            LOST_AND_FOUND,
            src_dir,
            dest_dir,
        ]
        _run_archive_cmd(rsync_cmd_args)
        return dest_dir


def make_archiver(config) -> Archiver:
    """
    Return the ``Archiver`` selected by ``config``.

    :param config: A ``BackupConfig`` instance.
    """
    if config.rsync:
        _log_debug_archive("Using rsync archiver")
        return RsyncArchiver()
    _log_debug_archive("Using tar archiver (compression=%s)", config.compression)
    return TarArchiver(compression=config.compression, overwrite=config.overwrite)
