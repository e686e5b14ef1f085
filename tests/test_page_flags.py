import logging

import pytest

from memstat_mosaic.page_flags import (
    PAGE_FLAG_COUNT,
    PAGE_FLAG_NAMES,
    format_page_flags,
    page_flag_names,
)


def test_flag_table_has_one_entry_per_bit() -> None:
    assert len(PAGE_FLAG_NAMES) == PAGE_FLAG_COUNT == 32
    assert PAGE_FLAG_NAMES[11] == "MMAP"
    assert PAGE_FLAG_NAMES[22] == "THP"
    assert PAGE_FLAG_NAMES[31] == "PRESENT"
    assert PAGE_FLAG_NAMES[23:28] == (None,) * 5


def test_format_page_flags_lists_set_flags_in_bit_order() -> None:
    flags = (1 << 31) | (1 << 12) | (1 << 0) | (1 << 29)

    assert format_page_flags(flags) == "LOCKED, ANON, FILE_PAGE / SHARE_ANON, PRESENT"


def test_format_page_flags_empty() -> None:
    assert format_page_flags(0) == ""


def test_unnamed_bits_are_skipped_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="memstat_mosaic.page_flags")

    names = page_flag_names((1 << 24) | (1 << 4))

    assert names == ["DIRTY"]
    assert "Unnamed page flag bit 24" in caplog.text
