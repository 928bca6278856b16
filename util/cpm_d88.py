#!/usr/bin/env python3
"""Append a file to a CP/M-80 disk image stored in a .d88 container.

Handles the 8 inch standard single-sided layout only:
  - 128 bytes/sector, 26 sectors/track, 77 tracks
  - First 2 tracks reserved
  - Block size: 1024 bytes, blocks 0 and 1 hold the directory

New files are written past the highest block used by any live file.
Holes left by deleted files are never reused, and a file whose name
already exists on the disk is not written.

Limits:
  - Files of more than 2 extents (32 KB) are refused; nothing is written
  - The file name must be ASCII and have an extension, e.g. PROG.COM

Usage:
  cpm_d88.py <image.d88> <file>     # Append <file> to the CP/M disk
  cpm_d88.py                        # Show usage
"""

import sys
import os
import argparse
from collections import namedtuple

# 8 inch standard single-sided disk
SECTOR_SIZE = 128
SECTORS_PER_TRACK = 26
TRACKS = 77
BOOT_TRACKS = 2
BLOCK_SIZE = 1024
RECORD_SIZE = 128
RECORDS_PER_BLOCK = BLOCK_SIZE // RECORD_SIZE  # 8
DIR_BLOCKS = 2
DIR_ENTRY_SIZE = 32
DIR_ENTRIES = DIR_BLOCKS * BLOCK_SIZE // DIR_ENTRY_SIZE  # 64
DISK_SIZE = SECTOR_SIZE * SECTORS_PER_TRACK * TRACKS
DATA_START = BOOT_TRACKS * SECTORS_PER_TRACK * SECTOR_SIZE  # 0x1A00
TOTAL_BLOCKS = SECTOR_SIZE * SECTORS_PER_TRACK * (TRACKS - BOOT_TRACKS) // BLOCK_SIZE  # 243

# Directory entry layout
STATUS_LIVE = 0x00
STATUS_FREE = 0xE5
BLOCKS_PER_EXTENT = 16
RECORDS_PER_EXTENT = 128
EOF_FILL = 0x1A

# Extent slots follow last_live_slot + 1 + (extent % 2); a third extent
# would land back on the first one's slot.
MAX_EXTENTS = 2

# .d88 container: a metadata header, then 16 bytes of header before every
# 256-byte payload. The first payload header is counted in the leading region.
D88_HEADER_SIZE = 688
SECTOR_HEADER_SIZE = 16
SECTOR_PAYLOAD_SIZE = 256
LEADING_REGION_SIZE = D88_HEADER_SIZE + SECTOR_HEADER_SIZE  # 704


class CpmAddError(Exception):
    """Base class for failures that abort an append."""


class InvalidFilename(CpmAddError):
    pass


class NameCollision(CpmAddError):
    pass


class CapacityExceeded(CpmAddError):
    pass


class UnverifiedExtentLayout(CpmAddError):
    pass


class IOFailure(CpmAddError):
    pass


ScanResult = namedtuple('ScanResult', ['collision', 'frontier_block', 'last_live_slot'])
WriteResult = namedtuple('WriteResult', ['extents', 'records', 'blocks'])


def translate(disk_offset):
    """Map an offset on the CP/M disk to an offset in the .d88 file."""
    if not 0 <= disk_offset < DISK_SIZE:
        raise ValueError(f"disk offset {disk_offset} out of range")
    return (LEADING_REGION_SIZE + disk_offset
            + SECTOR_HEADER_SIZE * (disk_offset // SECTOR_PAYLOAD_SIZE))


def block_offset(block_num):
    return DATA_START + BLOCK_SIZE * block_num


def slot_offset(slot):
    return block_offset(0) + DIR_ENTRY_SIZE * slot


def create_d88_image():
    """Create an empty CP/M disk in a .d88 container, in memory.

    Every payload byte is 0xE5 (CP/M empty directory marker); all header
    bytes are left zero.

    Returns:
        bytearray containing the container file
    """
    pairs = DISK_SIZE // SECTOR_PAYLOAD_SIZE
    stride = SECTOR_HEADER_SIZE + SECTOR_PAYLOAD_SIZE
    data = bytearray(D88_HEADER_SIZE + pairs * stride)
    for i in range(pairs):
        start = LEADING_REGION_SIZE + i * stride
        data[start:start + SECTOR_PAYLOAD_SIZE] = bytes([STATUS_FREE] * SECTOR_PAYLOAD_SIZE)
    return data


class D88Image:
    """CP/M disk view over an open .d88 file (or any seekable binary stream)."""

    def __init__(self, stream):
        self.stream = stream

    def _spans(self, disk_offset, length):
        # Never cross a payload boundary; a sector header sits there.
        pos = disk_offset
        end = disk_offset + length
        while pos < end:
            stop = min(end, (pos // SECTOR_PAYLOAD_SIZE + 1) * SECTOR_PAYLOAD_SIZE)
            yield pos, stop - pos
            pos = stop

    def read(self, disk_offset, length):
        data = bytearray()
        for pos, size in self._spans(disk_offset, length):
            self.stream.seek(translate(pos))
            chunk = self.stream.read(size)
            if len(chunk) != size:
                raise IOFailure(f"short read at disk offset 0x{pos:X}")
            data += chunk
        return bytes(data)

    def write(self, disk_offset, data):
        done = 0
        for pos, size in self._spans(disk_offset, len(data)):
            self.stream.seek(translate(pos))
            self.stream.write(data[done:done + size])
            done += size

    def read_entry(self, slot):
        return self.read(slot_offset(slot), DIR_ENTRY_SIZE)


def normalize_name(filename):
    """Convert a host filename to CP/M 8.3 directory fields.

    The name is cut at the last '.', truncated to 8 (name) and 3
    (extension) characters, upper-cased and space-padded. Only ASCII
    names are accepted.

    Returns:
        (name, ext) as 8 and 3 byte bytes objects
    """
    basename = os.path.basename(filename)
    base = os.fsencode(basename)
    dot = base.rfind(b'.')
    if dot < 0:
        raise InvalidFilename(f"{basename} has no extension")
    if not base.isascii():
        raise InvalidFilename(f"{basename} is not an ASCII name")
    name = base[:dot][:8].ljust(8).upper()
    ext = base[dot + 1:][:3].upper().ljust(3)
    return name, ext


def scan_directory(image, name, ext):
    """Scan every directory slot for a same-name file and the last used block.

    Deleted and free slots can sit between live ones, so all slots are read.
    """
    collision = False
    frontier_block = DIR_BLOCKS - 1
    last_live_slot = -1
    for slot in range(DIR_ENTRIES):
        entry = image.read_entry(slot)
        if entry[0] != STATUS_LIVE:
            continue
        last_live_slot = slot
        if entry[1:9] == name and entry[9:12] == ext:
            collision = True
        frontier_block = max(frontier_block, max(entry[16:32]))
    return ScanResult(collision, frontier_block, last_live_slot)


def extent_slot(last_live_slot, extent_num):
    """Directory slot used by the given extent of the file being written."""
    return last_live_slot + 1 + extent_num % 2


def check_extents(num_records):
    """Refuse a file needing more extents than the slot rule covers."""
    num_extents = max(1, (num_records + RECORDS_PER_EXTENT - 1) // RECORDS_PER_EXTENT)
    if num_extents > MAX_EXTENTS:
        raise UnverifiedExtentLayout(
            f"{num_records} records need {num_extents} extents")


def _new_entry(name, ext, extent_num):
    entry = bytearray(DIR_ENTRY_SIZE)
    entry[0] = STATUS_LIVE
    entry[1:9] = name
    entry[9:12] = ext
    entry[12] = extent_num
    return entry


def write_file(image, data, name, ext, frontier_block, last_live_slot):
    """Write data as a new file after the frontier block.

    Records go to disk as they are produced; each directory entry is
    written when its extent fills or the data runs out. On
    CapacityExceeded everything written so far stays on the disk and the
    open entry is dropped.

    Args:
        image: D88Image to write into
        data: file content
        name, ext: normalized 8.3 fields from normalize_name()
        frontier_block: highest block in use (from scan_directory)
        last_live_slot: last live directory slot (from scan_directory)

    Returns:
        WriteResult with the extent count, record count and blocks used
    """
    num_records = (len(data) + RECORD_SIZE - 1) // RECORD_SIZE
    check_extents(num_records)

    next_block = frontier_block + 1
    blocks = []
    extent_num = 0
    entry = None
    slot = None
    extent_records = 0
    block = None

    for record_num in range(num_records):
        if entry is None:
            slot = extent_slot(last_live_slot, extent_num)
            if slot >= DIR_ENTRIES:
                raise CapacityExceeded(f"no directory slot for extent {extent_num}")
            entry = _new_entry(name, ext, extent_num)
            extent_records = 0

        if extent_records % RECORDS_PER_BLOCK == 0:
            if next_block >= TOTAL_BLOCKS:
                raise CapacityExceeded(f"no free block after {next_block - 1}")
            block = next_block
            next_block += 1
            blocks.append(block)
            entry[16 + extent_records // RECORDS_PER_BLOCK] = block

        record = data[record_num * RECORD_SIZE:(record_num + 1) * RECORD_SIZE]
        if len(record) < RECORD_SIZE:
            record = record + bytes([EOF_FILL] * (RECORD_SIZE - len(record)))
        image.write(block_offset(block) + RECORD_SIZE * (extent_records % RECORDS_PER_BLOCK),
                    record)
        extent_records += 1
        entry[15] = extent_records  # 128 is stored as 0x80

        if extent_records == RECORDS_PER_EXTENT:
            image.write(slot_offset(slot), entry)
            entry = None
            extent_num += 1

    if entry is not None:
        image.write(slot_offset(slot), entry)
        extent_num += 1
    elif num_records == 0:
        # Empty file: a single entry with no records and no blocks.
        slot = extent_slot(last_live_slot, 0)
        if slot >= DIR_ENTRIES:
            raise CapacityExceeded("no directory slot for extent 0")
        image.write(slot_offset(slot), _new_entry(name, ext, 0))
        extent_num = 1

    return WriteResult(extent_num, num_records, blocks)


def list_files(image):
    """List all live files in the directory."""
    files = {}
    for slot in range(DIR_ENTRIES):
        entry = image.read_entry(slot)
        if entry[0] != STATUS_LIVE:
            continue
        name = entry[1:9].decode('latin-1').rstrip()
        ext = entry[9:12].decode('latin-1').rstrip()
        extent = entry[12]
        records = entry[15]

        fullname = f"{name}.{ext}" if ext else name
        if fullname not in files:
            files[fullname] = {'extents': 0, 'records': 0, 'blocks': []}

        files[fullname]['extents'] = max(files[fullname]['extents'], extent + 1)
        if extent == files[fullname]['extents'] - 1:
            files[fullname]['records'] = extent * RECORDS_PER_EXTENT + records

        for block in entry[16:32]:
            if block > 0:
                files[fullname]['blocks'].append(block)

    return files


def append_file(image, filename, data):
    """Append one file to an opened image.

    Raises:
        InvalidFilename, NameCollision, CapacityExceeded,
        UnverifiedExtentLayout, IOFailure
    """
    name, ext = normalize_name(filename)
    scan = scan_directory(image, name, ext)
    if scan.collision:
        raise NameCollision(f"{filename} already exists")

    num_records = (len(data) + RECORD_SIZE - 1) // RECORD_SIZE
    check_extents(num_records)
    num_blocks = (num_records + RECORDS_PER_BLOCK - 1) // RECORDS_PER_BLOCK
    print(f"Adding {os.path.basename(filename)}: {len(data)} bytes, {num_records} records, "
          f"{num_blocks} blocks starting at {scan.frontier_block + 1}")

    return write_file(image, data, name, ext, scan.frontier_block, scan.last_live_slot)


def add_file(image_path, host_path):
    """Append host_path to the disk in image_path, printing the outcome.

    Returns:
        True if the file was written completely
    """
    try:
        with open(host_path, 'rb') as f:
            data = f.read()
        with open(image_path, 'r+b') as f:
            append_file(D88Image(f), host_path, data)
    except InvalidFilename as e:
        print(f"Error: {e}.")
        return False
    except NameCollision:
        print("A same name file exists. Cancel writing.")
        return False
    except CapacityExceeded:
        print("Not enough capacity. The writing is incomplete.")
        return False
    except UnverifiedExtentLayout:
        print(f"Error: files of more than {MAX_EXTENTS} extents are not supported.")
        return False
    except (IOFailure, OSError) as e:
        print(f"Error: {e}")
        return False

    print("Done.")
    return True


def build_parser():
    parser = argparse.ArgumentParser(
        prog='cpmadd88',
        description='Write a file into a CP/M-80 disk image in .d88 format',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('image', help='.d88 disk image file')
    parser.add_argument('file', help='File to write into the CP/M disk')
    return parser


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()

    if not argv:
        parser.print_help()
        return 0
    if len(argv) != 2:
        print("Invalid arguments.")
        return 1

    # '--' so names starting with '-' stay positional
    args = parser.parse_args(['--'] + list(argv))
    print(f"{args.file} --> {args.image}")
    add_file(args.image, args.file)
    return 0


if __name__ == '__main__':
    sys.exit(main())
