"""
Crafts small MINIX V3 images for the test suites.

Images are built in memory from the pack() side of the mfs records:
boot block, superblock, bitmaps (left zeroed), inode table, then zones.
"""

import io
from typing import Dict, List, Optional, Tuple

import pytest

from mfs import (
    DIRECT_ZONES,
    DIRENT_SIZE,
    INODE_SIZE,
    MINIX_MAGIC,
    MINIX_PARTITION_TYPE,
    ROOT_INODE,
    S_IFDIR,
    S_IFREG,
    SECTOR_SIZE,
    SUPERBLOCK_OFFSET,
    DirEntry,
    Inode,
    PartitionEntry,
    Superblock,
    pack_partition_table,
)

TIMESTAMP = 1700000000


class MinixImageBuilder:
    def __init__(
        self,
        blocksize: int = 1024,
        log_zone_size: int = 0,
        ninodes: int = 64,
        i_blocks: int = 1,
        z_blocks: int = 1,
        magic: int = MINIX_MAGIC,
    ):
        self.superblock = Superblock(
            ninodes=ninodes,
            i_blocks=i_blocks,
            z_blocks=z_blocks,
            firstdata=0,
            log_zone_size=log_zone_size,
            max_file=DIRECT_ZONES * (blocksize << log_zone_size),
            zones=0,
            magic=magic,
            blocksize=blocksize,
            subversion=0,
        )
        zone_size = self.superblock.zone_size
        inode_table_blocks = -(-ninodes // (blocksize // INODE_SIZE))
        table_end = (self.superblock.inode_table_start_block + inode_table_blocks) * blocksize
        self.superblock.firstdata = -(-table_end // zone_size)

        self.next_zone = self.superblock.firstdata
        self.next_inode = ROOT_INODE + 1
        self.inodes: Dict[int, Inode] = {}
        self.zone_data: Dict[int, bytes] = {}
        self.dir_entries: Dict[int, List[Tuple[bytes, int]]] = {}
        self.dir_slots: Dict[int, Optional[List[int]]] = {}
        self._image: Optional[bytes] = None

        self._new_dir(ROOT_INODE, ROOT_INODE)

    @property
    def zone_size(self) -> int:
        return self.superblock.zone_size

    def alloc_zone(self, data: bytes = b"") -> int:
        zone_num = self.next_zone
        self.next_zone += 1
        self.zone_data[zone_num] = data
        return zone_num

    def alloc_inode(self) -> int:
        inode_num = self.next_inode
        self.next_inode += 1
        return inode_num

    def _new_dir(self, inode_num: int, parent_num: int, mode: int = 0o755, zone_slots=None):
        self.inodes[inode_num] = Inode(
            mode=S_IFDIR | mode, links=2, uid=0, gid=0, size=0,
            atime=TIMESTAMP, mtime=TIMESTAMP, ctime=TIMESTAMP,
        )
        self.dir_entries[inode_num] = [(b".", inode_num), (b"..", parent_num)]
        self.dir_slots[inode_num] = zone_slots

    def add_entry(self, dir_num: int, name: bytes, inode_num: int):
        """Append a raw entry; inode_num 0 makes a free slot"""
        self.dir_entries[dir_num].append((name, inode_num))

    def add_dir(self, parent_num: int, name: str, mode: int = 0o755, zone_slots=None) -> int:
        inode_num = self.alloc_inode()
        self._new_dir(inode_num, parent_num, mode, zone_slots)
        self.add_entry(parent_num, name.encode(), inode_num)
        return inode_num

    def add_file(
        self,
        parent_num: Optional[int],
        name: str,
        content: bytes,
        mode: int = 0o644,
        size: Optional[int] = None,
        zone_slots: Optional[List[int]] = None,
        file_type: int = S_IFREG,
    ) -> int:
        """
        Store content in consecutive zones placed in the given direct slots.
        Content past the direct zones is dropped; size defaults to len(content).
        """
        inode_num = self.alloc_inode()
        slots = zone_slots if zone_slots is not None else list(range(DIRECT_ZONES))
        zone = [0] * DIRECT_ZONES
        chunks = [content[i : i + self.zone_size] for i in range(0, len(content), self.zone_size)]
        for slot, chunk in zip(slots, chunks):
            zone[slot] = self.alloc_zone(chunk)

        self.inodes[inode_num] = Inode(
            mode=file_type | mode, links=1, uid=1000, gid=100,
            size=len(content) if size is None else size,
            atime=TIMESTAMP, mtime=TIMESTAMP, ctime=TIMESTAMP, zone=zone,
        )
        if parent_num is not None:
            self.add_entry(parent_num, name.encode(), inode_num)
        return inode_num

    def _layout_directories(self):
        per_zone = self.superblock.entries_per_zone
        for dir_num, entries in self.dir_entries.items():
            records = [DirEntry(inode_num, name).pack() for name, inode_num in entries]
            chunks = [b"".join(records[i : i + per_zone]) for i in range(0, len(records), per_zone)]
            slots = self.dir_slots[dir_num] or list(range(DIRECT_ZONES))
            inode = self.inodes[dir_num]
            inode.zone = [0] * DIRECT_ZONES
            for slot, chunk in zip(slots, chunks):
                inode.zone[slot] = self.alloc_zone(chunk)
            inode.size = len(entries) * DIRENT_SIZE

    def build(self) -> bytes:
        if self._image is not None:
            return self._image
        self._layout_directories()
        sb = self.superblock
        sb.zones = self.next_zone

        image = bytearray(self.next_zone * self.zone_size)
        image[SUPERBLOCK_OFFSET : SUPERBLOCK_OFFSET + Superblock.size()] = sb.pack()

        table_offset = sb.inode_table_start_block * sb.blocksize
        for inode_num, inode in self.inodes.items():
            offset = table_offset + (inode_num - 1) * INODE_SIZE
            image[offset : offset + INODE_SIZE] = inode.pack()

        for zone_num, data in self.zone_data.items():
            offset = zone_num * self.zone_size
            image[offset : offset + len(data)] = data
        self._image = bytes(image)
        return self._image


def partition_entry(first_sector: int, size: int, ptype: int = MINIX_PARTITION_TYPE) -> PartitionEntry:
    return PartitionEntry(0x80, 0, 0, 0, ptype, 0, 0, 0, first_sector, size)


def place(image: bytearray, offset: int, data: bytes):
    if len(image) < offset + len(data):
        image.extend(b"\x00" * (offset + len(data) - len(image)))
    image[offset : offset + len(data)] = data


def partitioned_image(fs_image: bytes, partition: int = 0, first_sector: int = 16,
                      ptype: int = MINIX_PARTITION_TYPE) -> bytes:
    """Put fs_image at first_sector behind an MBR selecting it as the given partition"""
    entries = [partition_entry(0, 0, 0) for _ in range(4)]
    entries[partition] = partition_entry(first_sector, len(fs_image) // SECTOR_SIZE, ptype)
    image = bytearray()
    place(image, first_sector * SECTOR_SIZE, fs_image)
    # The MBR shares sector 0 with the boot block when first_sector is 0
    place(image, 0, pack_partition_table(entries))
    return bytes(image)


def subpartitioned_image(fs_image: bytes, partition: int = 1, subpartition: int = 2,
                         primary_sector: int = 8, sub_sector: int = 64) -> bytes:
    """MBR -> primary partition holding a subpartition table -> filesystem at sub_sector"""
    primary = [partition_entry(0, 0, 0) for _ in range(4)]
    primary[partition] = partition_entry(primary_sector, 4096)
    subs = [partition_entry(0, 0, 0) for _ in range(4)]
    subs[subpartition] = partition_entry(sub_sector, len(fs_image) // SECTOR_SIZE)

    image = bytearray(pack_partition_table(primary))
    place(image, primary_sector * SECTOR_SIZE, pack_partition_table(subs))
    place(image, sub_sector * SECTOR_SIZE, fs_image)
    return bytes(image)


def sample_builder() -> MinixImageBuilder:
    """
    /
    ├── hello.txt         "hello world\\n"
    ├── docs/
    │   ├── readme.md
    │   └── deep/
    │       └── note.txt
    ├── empty             (zero-length file)
    └── big.bin           three zones of data
    """
    builder = MinixImageBuilder()
    builder.add_file(ROOT_INODE, "hello.txt", b"hello world\n")
    docs = builder.add_dir(ROOT_INODE, "docs")
    builder.add_file(docs, "readme.md", b"# docs\n", mode=0o600)
    deep = builder.add_dir(docs, "deep", mode=0o700)
    builder.add_file(deep, "note.txt", b"deep note")
    builder.add_file(ROOT_INODE, "empty", b"")
    builder.add_file(ROOT_INODE, "big.bin", bytes(range(256)) * 12)
    return builder


@pytest.fixture
def builder() -> MinixImageBuilder:
    return sample_builder()


@pytest.fixture
def image(builder):
    return io.BytesIO(builder.build())


@pytest.fixture
def image_file(tmp_path, builder):
    path = tmp_path / "minix.img"
    path.write_bytes(builder.build())
    return path
