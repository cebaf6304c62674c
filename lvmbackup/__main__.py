# Copyright Red Hat
#
# lvmbackup/__main__.py - LVM backup module entry point
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Entry point for ``python -m lvmbackup``.
"""
import sys

from lvmbackup.command import main

if __name__ == "__main__":
    sys.exit(main(sys.argv))
