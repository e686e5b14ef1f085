"""Kernel page flag names and helpers.

The low 23 bits are the ``KPF_*`` flags from ``/proc/kpageflags``
(``linux/kernel-page-flags.h``), which the kernel documents as stable
user-space API.  Bits 28-31 carry the per-mapping flags from
``/proc/<pid>/pagemap`` (kernel bits 55, 61, 62 and 63) so that both
groups fit into a single 32-bit word.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

PAGE_FLAG_COUNT = 32

KPF_MMAP = 11
KPF_ANON = 12
KPF_NOPAGE = 20
KPF_THP = 22
PM_PRESENT = 31

PAGE_FLAG_NAMES: tuple[str | None, ...] = (
    "LOCKED",
    "ERROR",
    "REFERENCED",
    "UPTODATE",
    "DIRTY",
    "LRU",
    "ACTIVE",
    "SLAB",
    "WRITEBACK",
    "RECLAIM",
    "BUDDY",
    "MMAP",
    "ANON",
    "SWAPCACHE",
    "SWAPBACKED",
    "COMPOUND_HEAD",
    "COMPOUND_TAIL",
    "HUGE",
    "UNEVICTABLE",
    "HWPOISON",
    "NOPAGE",
    "KSM",
    "THP",
    None,
    None,
    None,
    None,
    None,
    "SOFT_DIRTY",
    "FILE_PAGE / SHARE_ANON",
    "SWAPPED",
    "PRESENT",
)


def is_flag_set(flags: int, bit: int) -> bool:
    """Return ``True`` when ``bit`` is set in ``flags``."""
    return bool(flags & (1 << bit))


def page_flag_names(flags: int) -> list[str]:
    """Return the names of the set flags in ascending bit order.

    Bits without a name should never be set; they are reported through the
    module logger and left out of the result.
    """
    names: list[str] = []
    for bit in range(PAGE_FLAG_COUNT):
        if not is_flag_set(flags, bit):
            continue
        name = PAGE_FLAG_NAMES[bit]
        if name is None:
            logger.debug("Unnamed page flag bit %d set in 0x%08X", bit, flags)
            continue
        names.append(name)
    return names


def format_page_flags(flags: int) -> str:
    """Render ``flags`` as a comma-separated list of flag names."""
    return ", ".join(page_flag_names(flags))
