# Copyright Red Hat
#
# lvmbackup/__init__.py - LVM backup package initialisation
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Lvmbackup top-level package.
"""
from ._lvmbackup import *  # noqa: F401, F403
from ._lvmbackup import __all__  # noqa: F401

__version__ = "0.1.0"
