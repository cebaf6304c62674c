# Copyright Red Hat
#
# lvmbackup/manager/_attrs.py - LVM2 lv_attr decoding
#
# This file is part of the lvmbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Decoding of the LVM2 ``lv_attr`` status code.

The ``lv_attr`` field reported by ``lvs`` is a fixed width string of ten
characters, each position drawing from its own alphabet (see ``lvs(8)``).
The functions in this module are pure: they never call out to LVM2 and
never raise for unrecognised characters.
"""
from typing import Dict, List
import logging

from lvmbackup import LVMBACKUP_SUBSYSTEM_LVM

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_warn = _log.warning


def _log_debug_lvm(msg, *args, **kwargs):
    """A wrapper for lvm subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVMBACKUP_SUBSYSTEM_LVM}, **kwargs)


#: Number of characters in an ``lv_attr`` code.
LV_ATTR_LEN = 10

# lv_attr flag indexes
LV_ATTR_TYPE_IDX = 0
LV_ATTR_PERM_IDX = 1
LV_ATTR_ALLOC_IDX = 2
LV_ATTR_FIXED_IDX = 3
LV_ATTR_STATE_IDX = 4
LV_ATTR_OPEN_IDX = 5
LV_ATTR_TARGET_IDX = 6
LV_ATTR_ZERO_IDX = 7
LV_ATTR_HEALTH_IDX = 8
LV_ATTR_SKIP_IDX = 9

# lv_attr flag values
LVM_ATTR_UNSET = "-"
LVM_ACTIVE_ATTR = "a"
LVM_PVMOVE_ATTR = "p"
LVM_CACHE_ATTR = "C"
LVM_MIRROR_TARGET_ATTR = "m"
LVM_RAID_TARGET_ATTR = "r"
LVM_METADATA_ATTR = "e"
LVM_LV_ORIGIN_MERGING = "O"
LVM_COW_ATTRS = "sS"
LVM_MIRROR_ATTRS = "mM"
LVM_RAID_ATTRS = "rR"
LVM_THIN_VOLUME_ATTRS = "OSV"
# Does not include thin pool metadata.
LVM_THIN_TYPE_ATTRS = "tTOSV"

_VOLUME_TYPES = {
    "C": "cache",
    "m": "mirrored",
    "M": "mirrored without initial sync",
    "o": "origin",
    "O": "origin with merging snapshot",
    "r": "raid",
    "R": "raid without initial sync",
    "s": "snapshot",
    "S": "merging snapshot",
    "p": "pvmove",
    "v": "virtual",
    "i": "mirror or raid image",
    "I": "mirror or raid image out-of-sync",
    "l": "mirror log device",
    "c": "volume under conversion",
    "V": "thin",
    "t": "thin pool",
    "T": "thin pool data",
    "d": "vdo pool",
    "D": "vdo pool data",
    "e": "raid or pool m(e)tadata or pool metadata spare",
    "-": "normal",
}

_PERMISSIONS = {
    "w": "writeable",
    "r": "read-only",
    "R": "read-only activation of non-read-only volume",
}

_ALLOCATION_POLICIES = {
    "a": "anywhere",
    "A": "anywhere, locked",
    "c": "contiguous",
    "C": "contiguous, locked",
    "i": "inherited",
    "I": "inherited, locked",
    "l": "cling",
    "L": "cling, locked",
    "n": "normal",
    "N": "normal, locked",
    "-": "none",
}

_FIXED_MINOR = {
    "m": "Fixed minor",
    "-": "none",
}

_STATES = {
    "a": "active",
    "h": "historical",
    "s": "suspended",
    "I": "invalid snapshot",
    "S": "invalid suspended snapshot",
    "m": "snapshot merge failed",
    "M": "suspended snapshot merge failed",
    "d": "mapped device present without tables",
    "i": "mapped device present with inactive table",
    "c": "thin-pool check needed",
    "C": "suspended thin-pool check needed",
    "X": "unknown",
}

_DEVICE_STATES = {
    "o": "open",
    "X": "unknown",
    "-": "-",
}

_TARGET_TYPES = {
    "C": "cache",
    "m": "mirror",
    "r": "raid",
    "s": "snapshot",
    "t": "thin",
    "u": "unknown",
    "v": "virtual",
    "-": "normal",
}

_ZERO = {
    "z": "Newly-allocated data blocks are overwritten with blocks of zeroes before use",
    "-": "none",
}

_HEALTH = {
    "p": "partial",
    "X": "unknown",
    "r": "refresh needed",
    "m": "mismatches exist",
    "w": "writemostly",
    "R": "remove after reshape",
    "F": "failed",
    "D": "out of data space",
    "M": "metadata read-only",
    "E": "dm-writecache reports an error",
    "-": "ok",
}

_SKIP_ACTIVATION = {
    "k": "skip activation",
    "-": "none",
}

# (field name, display label, alphabet, silent when unset)
#
# Fields with a ``None`` label are displayed as their bare value; silent
# fields produce no description line at all for the '-' character.
_ATTR_FIELDS = (
    ("volume_type", "Volume type", _VOLUME_TYPES, False),
    ("permissions", "Permissions", _PERMISSIONS, False),
    ("allocation_policy", "Allocation policy", _ALLOCATION_POLICIES, True),
    ("fixed_minor", None, _FIXED_MINOR, True),
    ("state", "State", _STATES, False),
    ("device", "Device", _DEVICE_STATES, False),
    ("target_type", "Target type", _TARGET_TYPES, False),
    ("zero", None, _ZERO, True),
    ("health", "Volume health", _HEALTH, False),
    ("skip_activation", None, _SKIP_ACTIVATION, True),
)

_ORDINALS = (
    "1st",
    "2nd",
    "3rd",
    "4th",
    "5th",
    "6th",
    "7th",
    "8th",
    "9th",
    "10th",
)


def _attr_at(lv_attr: str, idx: int) -> str:
    """
    Return the character at position ``idx`` of ``lv_attr``, or the empty
    string if the code is too short.
    """
    if lv_attr is None or idx >= len(lv_attr):
        return ""
    return lv_attr[idx]


def _unknown_attr(idx: int, attr: str) -> str:
    return f"Unknown {_ORDINALS[idx]} attribute: {attr}"


class VolumeAttributes:
    """
    The ten decoded fields of an ``lv_attr`` code.

    Each field holds the human readable value for its position. Positions
    holding a character outside their alphabet decode to an
    ``"Unknown Nth attribute: X"`` string, and the same string is added to
    ``warnings``.
    """

    # pylint: disable=too-many-instance-attributes
    def __init__(self, lv_attr: str):
        self.lv_attr = lv_attr
        self.warnings: List[str] = []
        self._silent: Dict[str, bool] = {}

        for idx, (name, _label, alphabet, silent) in enumerate(_ATTR_FIELDS):
            attr = _attr_at(lv_attr, idx)
            if attr in alphabet:
                value = alphabet[attr]
                self._silent[name] = silent and attr == LVM_ATTR_UNSET
            else:
                value = _unknown_attr(idx, attr)
                self.warnings.append(value)
                self._silent[name] = False
            setattr(self, name, value)

    def __str__(self):
        return "\n".join(self.describe())

    def describe(self) -> List[str]:
        """
        Return the human readable description of these attributes as a list
        of lines.
        """
        lines = []
        for name, label, _alphabet, _silent in _ATTR_FIELDS:
            if self._silent[name]:
                continue
            value = getattr(self, name)
            if label is None:
                lines.append(value)
            else:
                lines.append(f"{label}: {value}")
        return lines

    def predicates(self) -> Dict[str, bool]:
        """
        Return a dictionary mapping each ``lv_attr_is_*`` predicate name to
        its value for this code.
        """
        return {name: pred(self.lv_attr) for name, pred in PREDICATES}


def decode_lv_attr(lv_attr: str) -> VolumeAttributes:
    """
    Decode ``lv_attr`` into its ten semantic fields.

    Unknown characters never raise: they are logged as a warning and
    reported in the ``warnings`` list of the returned object.

    :param lv_attr: An ``lv_attr`` string as reported by ``lvs``.
    :returns: A ``VolumeAttributes`` instance.
    """
    attrs = VolumeAttributes(lv_attr)
    for warning in attrs.warnings:
        _log_warn("lv_attr '%s': %s", lv_attr, warning)
    _log_debug_lvm("Decoded lv_attr '%s'", lv_attr)
    return attrs


def describe_lv_attr(lv_attr: str) -> List[str]:
    """
    Return the human readable description of ``lv_attr`` as a list of lines.
    """
    return VolumeAttributes(lv_attr).describe()


def lv_attr_is_active(lv_attr: str) -> bool:
    """Return ``True`` if the volume is active."""
    return _attr_at(lv_attr, LV_ATTR_STATE_IDX) == LVM_ACTIVE_ATTR


def lv_attr_is_cow(lv_attr: str) -> bool:
    """Return ``True`` if the volume is a (possibly merging) CoW snapshot."""
    attr = _attr_at(lv_attr, LV_ATTR_TYPE_IDX)
    return bool(attr) and attr in LVM_COW_ATTRS


def lv_attr_is_locked(lv_attr: str) -> bool:
    """
    Return ``True`` if the allocation policy is locked (upper case).
    """
    attr = _attr_at(lv_attr, LV_ATTR_ALLOC_IDX)
    return attr in _ALLOCATION_POLICIES and attr.isupper()


def lv_attr_is_pvmove(lv_attr: str) -> bool:
    """Return ``True`` if the volume is a pvmove volume."""
    return _attr_at(lv_attr, LV_ATTR_TYPE_IDX) == LVM_PVMOVE_ATTR


def lv_attr_is_cache_type(lv_attr: str) -> bool:
    """Return ``True`` if the volume is a cache or writecache volume."""
    return _attr_at(lv_attr, LV_ATTR_TYPE_IDX) == LVM_CACHE_ATTR


def lv_attr_is_any_cache(lv_attr: str) -> bool:
    """Return ``True`` if the volume has a cache target."""
    return _attr_at(lv_attr, LV_ATTR_TARGET_IDX) == LVM_CACHE_ATTR


def lv_attr_is_mirror_type_or_pvmove(lv_attr: str) -> bool:
    """Return ``True`` if the volume has a mirror target (mirrors, pvmove)."""
    return _attr_at(lv_attr, LV_ATTR_TARGET_IDX) == LVM_MIRROR_TARGET_ATTR


def lv_attr_is_mirror(lv_attr: str) -> bool:
    """Return ``True`` if the volume is a mirrored volume."""
    attr = _attr_at(lv_attr, LV_ATTR_TYPE_IDX)
    return bool(attr) and attr in LVM_MIRROR_ATTRS


def lv_attr_is_merging_origin(lv_attr: str) -> bool:
    """Return ``True`` if the volume is an origin with a merging snapshot."""
    return _attr_at(lv_attr, LV_ATTR_TYPE_IDX) == LVM_LV_ORIGIN_MERGING


def lv_attr_is_thin_volume(lv_attr: str) -> bool:
    """Return ``True`` if the volume is a thin volume."""
    attr = _attr_at(lv_attr, LV_ATTR_TYPE_IDX)
    return bool(attr) and attr in LVM_THIN_VOLUME_ATTRS


def lv_attr_is_thin_type(lv_attr: str) -> bool:
    """
    Return ``True`` if the volume is a thin volume, thin pool or thin pool
    data volume. Thin pool metadata is not reported.
    """
    attr = _attr_at(lv_attr, LV_ATTR_TYPE_IDX)
    return bool(attr) and attr in LVM_THIN_TYPE_ATTRS


def lv_attr_is_metadata(lv_attr: str) -> bool:
    """Return ``True`` if the volume is a raid or pool metadata volume."""
    return _attr_at(lv_attr, LV_ATTR_TYPE_IDX) == LVM_METADATA_ATTR


def lv_attr_is_raid_type(lv_attr: str) -> bool:
    """Return ``True`` if the volume has a raid target."""
    return _attr_at(lv_attr, LV_ATTR_TARGET_IDX) == LVM_RAID_TARGET_ATTR


def lv_attr_is_raid(lv_attr: str) -> bool:
    """Return ``True`` if the volume is a raid volume."""
    attr = _attr_at(lv_attr, LV_ATTR_TYPE_IDX)
    return bool(attr) and attr in LVM_RAID_ATTRS


PREDICATES = (
    ("is_active", lv_attr_is_active),
    ("is_cow", lv_attr_is_cow),
    ("is_locked", lv_attr_is_locked),
    ("is_pvmove", lv_attr_is_pvmove),
    ("is_cache_type", lv_attr_is_cache_type),
    ("is_any_cache", lv_attr_is_any_cache),
    ("is_mirror_type_or_pvmove", lv_attr_is_mirror_type_or_pvmove),
    ("is_mirror", lv_attr_is_mirror),
    ("is_merging_origin", lv_attr_is_merging_origin),
    ("is_thin_volume", lv_attr_is_thin_volume),
    ("is_thin_type", lv_attr_is_thin_type),
    ("is_metadata", lv_attr_is_metadata),
    ("is_raid_type", lv_attr_is_raid_type),
    ("is_raid", lv_attr_is_raid),
)

