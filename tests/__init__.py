# Copyright Red Hat
#
# tests/__init__.py - LVM backup test package
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
import logging
import os

from lvmbackup import LogicalVolume

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)


class MockArgs(object):
    debug = None
    verbose = 0
    log_file = None
    list_volumes = False
    ignore_volume = None
    ignore_mount_error = False
    snapshot_prefix = None
    part_rw = False
    overwrite = False
    dest_prefix = None
    rsync = False
    compression = None
    config = "/nonexistent/lvmbackup.conf"


def make_lv(lv_name, vg_name="vg0", lv_attr="-wi-ao----", origin="", segtype="linear",
            lv_size=10737418240):
    """Return a ``LogicalVolume`` with sensible defaults for tests."""
    return LogicalVolume(
        lv_name, vg_name, f"/dev/{vg_name}/{lv_name}", lv_size, lv_attr, origin, segtype
    )


def lvs_line(lv):
    """Format ``lv`` as an ``lvs --noheadings --separator '|'`` report row."""
    return (
        f"  {lv.lv_name}|{lv.vg_name}|{lv.lv_path}|{lv.lv_size}B|"
        f"{lv.lv_attr}|{lv.origin}|{lv.segtype}"
    )


def have_root():
    """Return ``True`` if the test suite is running as the root user,
    and ``False`` otherwise.
    """
    return os.geteuid() == 0 and os.getegid() == 0
