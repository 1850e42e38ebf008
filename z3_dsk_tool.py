#!/usr/bin/env python3

from typing import BinaryIO, Callable, List, NamedTuple, Optional, Sequence, Tuple

import argparse
import io
import os
import os.path
import stat
import sys

import dsk_map

# Disk geometries


class DiskGeometry(NamedTuple):
    name: str
    src: str
    tracks: int
    sectors_per_track: int
    sector_size: int
    stub_tracks: int
    sector_permutation: Tuple[int, ...]


def make_disk_geometry(**kw) -> DiskGeometry:
    return DiskGeometry(**kw)


# the i-th sector read from the story file within a track-sized group
# lands in slot sector_permutation[i] of that group. this is the skew
# Infocom's Apple II interpreters expect when they load a story from a
# DOS-order image, so it is fixed by the interpreter and not tunable.
APPLE2_DOS_ORDER_140K = make_disk_geometry(
    name='Apple II 5.25" DOS-order 140K',
    src="Infocom ZIP (version 3) interpreter disks",
    tracks=35,
    sectors_per_track=16,
    sector_size=256,
    stub_tracks=3,
    sector_permutation=(
        0x0, 0xD, 0xB, 0x9, 0x7, 0x5, 0x3, 0x1,
        0xE, 0xC, 0xA, 0x8, 0x6, 0x4, 0x2, 0xF,
    ),
)

KNOWN_DISK_GEOMETRIES = [APPLE2_DOS_ORDER_140K]


def group_size(geometry: DiskGeometry) -> int:
    return geometry.sectors_per_track * geometry.sector_size


def stub_size(geometry: DiskGeometry) -> int:
    return geometry.stub_tracks * group_size(geometry)


def total_image_size(geometry: DiskGeometry) -> int:
    return geometry.tracks * group_size(geometry)


def story_capacity(geometry: DiskGeometry) -> int:
    return total_image_size(geometry) - stub_size(geometry)


SECTOR_SIZE = APPLE2_DOS_ORDER_140K.sector_size
SECTORS_PER_GROUP = APPLE2_DOS_ORDER_140K.sectors_per_track
SECTOR_PERMUTATION = APPLE2_DOS_ORDER_140K.sector_permutation
GROUP_SIZE = group_size(APPLE2_DOS_ORDER_140K)
STUB_SIZE = stub_size(APPLE2_DOS_ORDER_140K)
TOTAL_IMAGE_SIZE = total_image_size(APPLE2_DOS_ORDER_140K)
STORY_CAPACITY = story_capacity(APPLE2_DOS_ORDER_140K)

# Errors


class DiskImageError(Exception):
    """Base class for every fatal assembly error. `stage` names the
    step that failed; `expected` and `actual` carry the sizes involved,
    when there are any.

    """

    stage = "assembly"

    def __init__(self, message, *, stage=None, expected=None, actual=None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.expected = expected
        self.actual = actual


class PreconditionError(DiskImageError):
    stage = "stub"


class ShortStubCopy(DiskImageError):
    stage = "stub"


class SourceReadError(DiskImageError):
    stage = "interleave"


class CapacityExceeded(DiskImageError):
    stage = "padding"


class WriteError(DiskImageError):
    stage = "write"


class SectorMapError(DiskImageError):
    stage = "sector map"


# Logging


class Logger(NamedTuple):
    append: Callable[[str], None]
    contents: Callable[[], List[str]]


def start_log(*, quiet: bool = False) -> Logger:
    output = []

    def append(s: str):
        output.append(s)
        if not quiet:
            print(s)

    def contents() -> List[str]:
        return output

    return Logger(append=append, contents=contents)


def save_log(*, path, logger: Logger):
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(logger.contents()) + "\n")


# Stream helpers


def read_chunk(src: BinaryIO, size: int) -> bytes:
    """Read up to `size` bytes, continuing after short reads so that a
    result shorter than `size` always means the end of the stream.

    """
    chunk = b""
    while len(chunk) < size:
        try:
            byts = src.read(size - len(chunk))
        except OSError as e:
            raise SourceReadError(
                f"error reading story file after {len(chunk)} bytes of a chunk: {e}"
            ) from e
        if not byts:
            break
        chunk += byts
    return chunk


def write_bytes(tgt: BinaryIO, byts) -> int:
    try:
        written = tgt.write(byts)
    except OSError as e:
        raise WriteError(f"error writing disk image: {e}") from e
    if written != len(byts):
        raise WriteError(
            f"short write to disk image: [{written}] bytes written. [{len(byts)}] expected",
            expected=len(byts),
            actual=written,
        )
    return written


def close_disk_image(tgt: BinaryIO):
    try:
        tgt.close()
    except OSError as e:
        raise WriteError(f"error closing disk image: {e}") from e


# Stub, story and padding stages


def copy_stub(
    *, stub: BinaryIO, tgt: BinaryIO, geometry: DiskGeometry = APPLE2_DOS_ORDER_140K
) -> int:
    expected = stub_size(geometry)
    copied = 0
    while True:
        try:
            byts = stub.read(geometry.sector_size)
        except OSError as e:
            raise ShortStubCopy(
                f"error reading interpreter stub: [{copied}] bytes written. [{expected}] expected",
                expected=expected,
                actual=copied,
            ) from e
        if not byts:
            break
        copied += write_bytes(tgt, byts)
    if copied != expected:
        raise ShortStubCopy(
            f"[{copied}] bytes written. [{expected}] expected",
            expected=expected,
            actual=copied,
        )
    return copied


def interleave_story(
    *,
    src: BinaryIO,
    tgt: BinaryIO,
    geometry: DiskGeometry = APPLE2_DOS_ORDER_140K,
    capacity: Optional[int] = None,
) -> int:
    """Copy the story file to `tgt` one track-sized group at a time,
    placing the i-th sector read into slot sector_permutation[i] of the
    group. Returns the number of story bytes written.

    A group cut short by the end of the story is written as the first N
    bytes of the group buffer, N being the number of bytes read for
    that group, whichever slots happen to occupy that prefix. The
    interpreters are built against this layout, so the final group
    must not be re-sorted.

    With a `capacity`, a group that would carry the story past it is
    not written and CapacityExceeded is raised instead.

    """
    sector_size = geometry.sector_size
    transferred = 0
    while True:
        group = bytearray(group_size(geometry))
        group_bytes = 0
        for slot in geometry.sector_permutation:
            chunk = read_chunk(src, sector_size)
            offset = slot * sector_size
            group[offset : offset + len(chunk)] = chunk
            group_bytes += len(chunk)
            if len(chunk) < sector_size:
                break
        if not group_bytes:
            break
        if capacity is not None and transferred + group_bytes > capacity:
            raise CapacityExceeded(
                f"story file too large for target image size: more than "
                f"{capacity} bytes of story data",
                stage="interleave",
                expected=capacity,
                actual=transferred + group_bytes,
            )
        transferred += write_bytes(tgt, bytes(group[:group_bytes]))
    return transferred


def pad_image(
    *, tgt: BinaryIO, written: int, geometry: DiskGeometry = APPLE2_DOS_ORDER_140K
) -> int:
    total = total_image_size(geometry)
    remaining = total - written
    if remaining < 0:
        raise CapacityExceeded(
            f"story file too large for target image size: "
            f"{written} bytes written, image holds {total} "
            f"(story capacity {story_capacity(geometry)})",
            expected=total,
            actual=written,
        )
    write_bytes(tgt, bytes(remaining))
    return remaining


class AssemblyResult(NamedTuple):
    stub_bytes: int
    story_bytes: int
    padding_bytes: int

    @property
    def image_bytes(self) -> int:
        return self.stub_bytes + self.story_bytes + self.padding_bytes


def make_assembly_result(**kw) -> AssemblyResult:
    return AssemblyResult(**kw)


def assemble_disk_image(
    *,
    stub: BinaryIO,
    src: BinaryIO,
    tgt: BinaryIO,
    geometry: DiskGeometry = APPLE2_DOS_ORDER_140K,
    logger: Optional[Logger] = None,
) -> AssemblyResult:
    if logger is None:
        logger = start_log(quiet=True)
    stub_bytes = copy_stub(stub=stub, tgt=tgt, geometry=geometry)
    logger.append(f"Stub copied: {stub_bytes} bytes")
    story_bytes = interleave_story(
        src=src, tgt=tgt, geometry=geometry, capacity=story_capacity(geometry)
    )
    groups = -(-story_bytes // group_size(geometry))
    logger.append(
        f"Data re-interleave/copy complete: {story_bytes} bytes in {groups} group(s)"
    )
    padding_bytes = pad_image(
        tgt=tgt, written=stub_bytes + story_bytes, geometry=geometry
    )
    logger.append(f"Padding: {padding_bytes} bytes")
    result = make_assembly_result(
        stub_bytes=stub_bytes, story_bytes=story_bytes, padding_bytes=padding_bytes
    )
    assert result.image_bytes == total_image_size(
        geometry
    ), f"Disk image is {result.image_bytes} bytes, not {total_image_size(geometry)}"
    return result


# Reading a story back out of an image


def inverse_permutation(permutation: Sequence[int]) -> Tuple[int, ...]:
    inverse = [0] * len(permutation)
    for i, slot in enumerate(permutation):
        inverse[slot] = i
    return tuple(inverse)


def deinterleave_group(
    group_data: bytes, *, geometry: DiskGeometry = APPLE2_DOS_ORDER_140K
) -> bytes:
    """Undo the sector skew of one complete interleaved group. Only
    full groups round-trip; see interleave_story.

    """
    sector_size = geometry.sector_size
    if len(group_data) != group_size(geometry):
        raise ValueError(
            f"Group is {len(group_data)} bytes, not {group_size(geometry)}"
        )
    inverse = inverse_permutation(geometry.sector_permutation)
    chunks = [b""] * geometry.sectors_per_track
    for slot, i in enumerate(inverse):
        chunks[i] = group_data[slot * sector_size : (slot + 1) * sector_size]
    return b"".join(chunks)


def story_offset_to_image_offset(
    offset: int, *, geometry: DiskGeometry = APPLE2_DOS_ORDER_140K
) -> int:
    if not 0 <= offset < story_capacity(geometry):
        raise ValueError(
            f"Story offset {offset} is outside 0..{story_capacity(geometry) - 1}"
        )
    group, rest = divmod(offset, group_size(geometry))
    chunk, byte = divmod(rest, geometry.sector_size)
    return (
        stub_size(geometry)
        + group * group_size(geometry)
        + geometry.sector_permutation[chunk] * geometry.sector_size
        + byte
    )


# Command line


def validate_stub_file(path, *, geometry: DiskGeometry = APPLE2_DOS_ORDER_140K):
    size = os.stat(path).st_size
    if size != stub_size(geometry):
        raise PreconditionError(
            f"Stub file [{path}] invalid - size [{size}], not {stub_size(geometry)}",
            expected=stub_size(geometry),
            actual=size,
        )


def validate_story_file(path, *, geometry: DiskGeometry = APPLE2_DOS_ORDER_140K):
    size = os.stat(path).st_size
    if size > story_capacity(geometry):
        raise CapacityExceeded(
            f"Story file [{path}] too large for target image size - "
            f"size [{size}], at most {story_capacity(geometry)}",
            expected=story_capacity(geometry),
            actual=size,
        )


def log_banner(*, stub_path, story_path, target_path, geometry, logger: Logger):
    logger.append("\n== Infocom Story Re-Interleave and Disk Image Maker ==")
    logger.append(f"Disk format:    {geometry.name}")
    logger.append(f"Creating disk:  {target_path}")
    logger.append(f"From data file: {story_path}")
    logger.append(f"Using stub:     {stub_path}")


def z3_dsk_tool(
    *,
    stub_path: str,
    story_path: str,
    target_path: str,
    logger: Logger,
    sector_map_path: Optional[str] = None,
    geometry: DiskGeometry = APPLE2_DOS_ORDER_140K,
) -> AssemblyResult:
    validate_stub_file(stub_path, geometry=geometry)
    validate_story_file(story_path, geometry=geometry)
    log_banner(
        stub_path=stub_path,
        story_path=story_path,
        target_path=target_path,
        geometry=geometry,
        logger=logger,
    )
    logger.append("\n== Assembling ==")
    with open(stub_path, "rb") as stub, open(story_path, "rb") as src:
        tgt = open(target_path, "wb")
        # only a regular file this run truncated is ours to remove;
        # devices, pipes and symlinks are left alone
        removable = stat.S_ISREG(os.fstat(tgt.fileno()).st_mode) and not (
            os.path.islink(target_path)
        )
        completed = False
        try:
            try:
                result = assemble_disk_image(
                    stub=stub, src=src, tgt=tgt, geometry=geometry, logger=logger
                )
            finally:
                close_disk_image(tgt)
            completed = True
        finally:
            if not completed and removable:
                os.remove(target_path)
    if sector_map_path is not None:
        image = dsk_map.render_sector_map(result=result, geometry=geometry)
        try:
            dsk_map.save_sector_map(path=sector_map_path, image=image)
        except OSError as e:
            raise SectorMapError(
                f"Unable to write sector map [{sector_map_path}]: {e.strerror or e}"
            ) from e
        logger.append(f"Sector map:     {sector_map_path}")
    logger.append("Done!")
    return result


HELP_DESCRIPTION = """\
Converts an Infocom Z3-type (the most common) story file into an Apple II
disk image. You need the 12K interpreter stub from the beginning of an
existing DOS-order (.dsk/.do) Infocom disk image, for instance one made
with:

  head --bytes 12288 deadline.dsk > info3m.bin
"""

HELP_EPILOG = """\
Example: for interpreter stub info3m.bin and story file minizork.z3, generate
minizork.dsk with:

  z3-dsk-tool info3m.bin minizork.z3 minizork.dsk
"""


def make_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="z3-dsk-tool",
        description=HELP_DESCRIPTION,
        epilog=HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("stub", help=f"interpreter stub, exactly {STUB_SIZE} bytes")
    parser.add_argument("story", help=f"story file, at most {STORY_CAPACITY} bytes")
    parser.add_argument("target", help=f"disk image to create ({TOTAL_IMAGE_SIZE} bytes)")
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="do not print progress messages"
    )
    parser.add_argument("--log", metavar="FILE", help="also save progress messages to FILE")
    parser.add_argument(
        "--sector-map", metavar="PNG", help="render a map of the disk's sectors to PNG"
    )
    return parser


def main(argv=None) -> int:
    args = make_arg_parser().parse_args(argv)
    prog = os.path.basename(sys.argv[0]) or "z3-dsk-tool"
    logger = start_log(quiet=args.quiet)
    status = 0
    try:
        z3_dsk_tool(
            stub_path=args.stub,
            story_path=args.story,
            target_path=args.target,
            logger=logger,
            sector_map_path=args.sector_map,
        )
    except DiskImageError as e:
        print(f"{prog}: {e.stage}: {e}", file=sys.stderr)
        status = 1
    except OSError as e:
        print(f"{prog}: Unable to open file [{e.filename}]: {e.strerror}", file=sys.stderr)
        status = 1
    if args.log is not None:
        try:
            save_log(path=args.log, logger=logger)
        except OSError as e:
            print(f"{prog}: log: Unable to write file [{args.log}]: {e.strerror}", file=sys.stderr)
            status = 1
    return status


def smoke_test_sector_permutation():
    for geometry in KNOWN_DISK_GEOMETRIES:
        permutation = geometry.sector_permutation
        assert sorted(permutation) == list(range(geometry.sectors_per_track))
        inverse = inverse_permutation(permutation)
        for i, slot in enumerate(permutation):
            assert inverse[slot] == i
        story = b"".join(
            bytes([i]) * geometry.sector_size
            for i in range(geometry.sectors_per_track)
        )
        tgt = io.BytesIO()
        assert interleave_story(
            src=io.BytesIO(story), tgt=tgt, geometry=geometry
        ) == len(story)
        for i, slot in enumerate(permutation):
            offset = slot * geometry.sector_size
            assert tgt.getvalue()[offset] == i
        assert deinterleave_group(tgt.getvalue(), geometry=geometry) == story


def smoke_test_padding():
    for geometry in KNOWN_DISK_GEOMETRIES:
        assert stub_size(geometry) + story_capacity(geometry) == total_image_size(
            geometry
        )
        tgt = io.BytesIO()
        assert pad_image(tgt=tgt, written=stub_size(geometry), geometry=geometry) == (
            story_capacity(geometry)
        )
        assert tgt.getvalue() == bytes(story_capacity(geometry))
        try:
            pad_image(
                tgt=io.BytesIO(), written=total_image_size(geometry) + 1, geometry=geometry
            )
        except CapacityExceeded:
            pass
        else:
            assert False, "padding past the end of the image went undetected"


def smoke_test_everything():
    smoke_test_sector_permutation()
    smoke_test_padding()


smoke_test_everything()  # do this at import time so a broken table
# gets noticed as soon as possible

if __name__ == "__main__":
    sys.exit(main())
