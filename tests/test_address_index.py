import random

import pytest

from memstat_mosaic.address_index import AddressIndex, PageInfo
from memstat_mosaic.config import LayoutConfig
from memstat_mosaic.errors import MalformedRecordError, RegionOrderError
from memstat_mosaic.layout import LayoutEngine, TileColor, classify_page
from memstat_mosaic.model import MosaicModel, describe_page
from memstat_mosaic.protocol import MappedRegion, encode_frame

PAGE = 0x1000
PRESENT = 1 << 31
ANON = 1 << 12


def sample_regions() -> list[MappedRegion]:
    return [
        MappedRegion(
            start=0x10000,
            end=0x13000,
            backing_file="/usr/bin/top",
            use_counts=(1, 2, 3),
            combined_flags=(PRESENT, PRESENT | ANON, 0),
        ),
        MappedRegion(
            start=0x15000,
            end=0x16000,
            backing_file="",
            use_counts=(1,),
            combined_flags=(PRESENT | ANON,),
        ),
        MappedRegion(
            start=0x900000,
            end=0x902000,
            backing_file="[stack]",
            use_counts=(1, 1),
            combined_flags=(PRESENT, PRESENT),
        ),
    ]


def build_index(config: LayoutConfig, regions: list[MappedRegion]) -> AddressIndex:
    layout = LayoutEngine(config).layout(regions)
    return AddressIndex.from_layout(layout, regions)


def test_address_from_position_uses_row_index() -> None:
    config = LayoutConfig(columns=4, separator_rows=1)
    index = build_index(config, sample_regions())

    assert index.address_from_position(0, 0) == 0x10000
    assert index.address_from_position(0, 3) == 0x13000
    assert index.address_from_position(1, 1) == 0x15000
    # Second large region starts after two content rows and one separator row.
    assert index.address_from_position(3, 0) == 0x900000
    assert index.address_from_position(3, 1) == 0x901000


def test_address_from_position_out_of_range() -> None:
    index = build_index(LayoutConfig(columns=4), sample_regions())

    assert index.address_from_position(-1, 0) is None
    assert index.address_from_position(0, 4) is None
    assert index.address_from_position(0, -1) is None


def test_address_from_position_without_regions() -> None:
    index = build_index(LayoutConfig(columns=4), [])

    assert index.address_from_position(0, 0) is None


def test_flags_at_address_returns_page_data() -> None:
    index = build_index(LayoutConfig(columns=4), sample_regions())

    assert index.flags_at_address(0x11000) == PageInfo(
        address=0x11000,
        flags=PRESENT | ANON,
        use_count=2,
        backing_file="/usr/bin/top",
    )
    info = index.flags_at_address(0x12FFF)
    assert info is not None
    assert info.use_count == 3
    assert info.flags == 0


def test_flags_at_address_not_mapped() -> None:
    index = build_index(LayoutConfig(columns=4), sample_regions())

    assert index.flags_at_address(0x0) is None
    assert index.flags_at_address(0x13000) is None  # gap
    assert index.flags_at_address(0x14FFF) is None  # gap
    assert index.flags_at_address(0x902000) is None  # past the last region


def test_forward_and_reverse_lookups_agree() -> None:
    rng = random.Random(11)
    regions: list[MappedRegion] = []
    address = 0x400000
    for _ in range(25):
        address += rng.choice((0, 2, 40, 500)) * PAGE
        pages = rng.randint(1, 12)
        regions.append(
            MappedRegion(
                start=address,
                end=address + pages * PAGE,
                backing_file=f"map{len(regions)}",
                use_counts=tuple(rng.randint(0, 3) for _ in range(pages)),
                combined_flags=tuple(rng.choice((0, PRESENT, PRESENT | ANON)) for _ in range(pages)),
            )
        )
        address += pages * PAGE
    config = LayoutConfig(columns=10, separator_rows=2)
    layout = LayoutEngine(config).layout(regions)
    index = AddressIndex.from_layout(layout, regions)

    for row, column, color in layout.tiles:
        if color == TileColor.SEPARATOR:
            continue
        address = index.address_from_position(row, column)
        assert address is not None
        info = index.flags_at_address(address)
        if color == TileColor.GAP:
            assert info is None
        else:
            assert info is not None
            assert classify_page(info.flags, info.use_count) == color


def test_model_feeds_chunks_and_answers_queries() -> None:
    model = MosaicModel(LayoutConfig(columns=4, separator_rows=1))
    stream = encode_frame(sample_regions())

    results = [model.feed(stream[i : i + 5]) for i in range(0, len(stream), 5)]

    assert results[-1] is True
    assert not any(results[:-1])
    assert model.layout.rows == 4
    assert model.address_at(3, 1) == 0x901000
    info = model.page_info_at(0, 1)
    assert info is not None
    assert info.use_count == 2
    assert model.page_info_at(0, 3) is None  # gap tile
    assert model.page_info_at(-5, 0) is None


def test_model_keeps_previous_layout_on_order_violation() -> None:
    model = MosaicModel(LayoutConfig(columns=4))
    model.feed(encode_frame(sample_regions()))
    before = model.layout
    overlapping = sample_regions()
    overlapping.append(overlapping[0])

    with pytest.raises(RegionOrderError):
        model.feed(encode_frame(overlapping))

    assert model.layout is before
    assert list(model.regions) == sample_regions()


def test_model_propagates_malformed_frames() -> None:
    model = MosaicModel()

    with pytest.raises(MalformedRecordError):
        model.feed(b"\x04\x00\x00\x00\x00\x00\x00\x00abcd")

    assert model.regions == ()


def test_describe_page() -> None:
    info = PageInfo(address=0x7F00, flags=PRESENT | ANON, use_count=1, backing_file="")

    text = describe_page(info)

    assert text.splitlines() == [
        "0x0000000000007F00",
        "use count: 1",
        "backing file: (anonymous)",
        "flags: ANON, PRESENT",
    ]
    assert describe_page(None) == "No page data"


def test_model_lays_out_good_frame_sent_with_a_malformed_one() -> None:
    model = MosaicModel(LayoutConfig(columns=4))
    model.feed(encode_frame(sample_regions()[:1]))
    newer = sample_regions()[2:]
    bad = b"\x04\x00\x00\x00\x00\x00\x00\x00abcd"

    assert model.feed(encode_frame(newer) + bad) is True
    assert list(model.regions) == newer
    assert model.address_at(0, 0) == 0x900000

    with pytest.raises(MalformedRecordError):
        model.feed(b"")
    assert list(model.regions) == newer


def test_tiles_past_a_large_region_show_no_page() -> None:
    first = MappedRegion(
        start=0x100000, end=0x101000, backing_file="A", use_counts=(1,), combined_flags=(PRESENT,)
    )
    second_start = 0x100000 + 101 * PAGE
    second = MappedRegion(
        start=second_start,
        end=second_start + PAGE,
        backing_file="B",
        use_counts=(1,),
        combined_flags=(PRESENT,),
    )
    model = MosaicModel(LayoutConfig())
    model.update([first, second])

    info = model.page_info_at(0, 0)
    assert info is not None
    assert info.backing_file == "A"
    # Unpainted rest of row 0 and the separator rows map past region A.
    assert model.page_info_at(0, 101) is None
    assert model.page_info_at(1, 0) is None
    assert model.page_info_at(2, 511) is None
    info = model.page_info_at(3, 0)
    assert info is not None
    assert info.backing_file == "B"
