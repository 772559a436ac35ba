import struct
from typing import List

import attr

# Partition table (MBR sector)
SECTOR_SIZE = 512
PARTITION_TABLE_OFFSET = 446  # 0x1BE
PARTITION_ENTRY_SIZE = 16
PARTITION_COUNT = 4
BOOT_SIGNATURE = b"\x55\xaa"  # bytes 510-511
BOOT_SIGNATURE_OFFSET = 510
MINIX_PARTITION_TYPE = 0x81

# Superblock
SUPERBLOCK_OFFSET = 1024
MINIX_MAGIC = 0x4D5A
MINIX_MAGIC_REVERSED = 0x5A4D
RESERVED_BLOCKS = 2  # boot block + superblock
MAX_ZONE_SIZE = 0xFFFFFFFF  # zone sizes are 32-bit quantities

# Inodes and directories
INODE_SIZE = 64
ROOT_INODE = 1
DIRECT_ZONES = 7
DIRENT_NAME_SIZE = 60
DIRENT_SIZE = 4 + DIRENT_NAME_SIZE

# File types
S_IFMT = 0o170000  # file type mask
S_IFREG = 0o100000
S_IFDIR = 0o040000


@attr.s(auto_attribs=True)
class PartitionEntry:
    """One 16-byte entry of an MBR-style partition table."""

    bootind: int
    start_head: int
    start_sec: int
    start_cyl: int
    type: int
    end_head: int
    end_sec: int
    end_cyl: int
    first_sector: int  # LBA
    size: int  # in sectors

    _fmt = "<BBBBBBBBII"

    def pack(self) -> bytes:
        return struct.pack(
            self._fmt,
            self.bootind,
            self.start_head,
            self.start_sec,
            self.start_cyl,
            self.type,
            self.end_head,
            self.end_sec,
            self.end_cyl,
            self.first_sector,
            self.size,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "PartitionEntry":
        return cls(*struct.unpack(cls._fmt, data[:PARTITION_ENTRY_SIZE]))

    @property
    def byte_offset(self) -> int:
        return self.first_sector * SECTOR_SIZE


def unpack_partition_table(sector: bytes) -> List[PartitionEntry]:
    """Decode the four entries of a partition table sector (signature not checked)."""
    entries = []
    for i in range(PARTITION_COUNT):
        start = PARTITION_TABLE_OFFSET + i * PARTITION_ENTRY_SIZE
        entries.append(PartitionEntry.unpack(sector[start : start + PARTITION_ENTRY_SIZE]))
    return entries


def pack_partition_table(entries: List[PartitionEntry]) -> bytes:
    """Build a full 512-byte sector holding up to four entries and the boot signature."""
    sector = bytearray(SECTOR_SIZE)
    for i, entry in enumerate(entries[:PARTITION_COUNT]):
        start = PARTITION_TABLE_OFFSET + i * PARTITION_ENTRY_SIZE
        sector[start : start + PARTITION_ENTRY_SIZE] = entry.pack()
    sector[BOOT_SIGNATURE_OFFSET:SECTOR_SIZE] = BOOT_SIGNATURE
    return bytes(sector)


@attr.s(auto_attribs=True)
class Superblock:
    """MINIX V3 superblock, as laid out on disk at partition start + 1024.

    Only the stored fields are attributes; the padding words are dropped on
    unpack and written back as zeros.
    """

    ninodes: int
    i_blocks: int  # blocks used by the inode bitmap
    z_blocks: int  # blocks used by the zone bitmap
    firstdata: int
    log_zone_size: int
    max_file: int
    zones: int
    magic: int
    blocksize: int
    subversion: int

    # ninodes pad1 i_blocks z_blocks firstdata log_zone_size pad2
    # max_file zones magic pad3 blocksize subversion
    _fmt = "<IHhhHhhIIHhHB"

    def pack(self) -> bytes:
        return struct.pack(
            self._fmt,
            self.ninodes,
            0,
            self.i_blocks,
            self.z_blocks,
            self.firstdata,
            self.log_zone_size,
            0,
            self.max_file,
            self.zones,
            self.magic,
            0,
            self.blocksize,
            self.subversion,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Superblock":
        (
            ninodes,
            _pad1,
            i_blocks,
            z_blocks,
            firstdata,
            log_zone_size,
            _pad2,
            max_file,
            zones,
            magic,
            _pad3,
            blocksize,
            subversion,
        ) = struct.unpack(cls._fmt, data[: cls.size()])
        return cls(
            ninodes,
            i_blocks,
            z_blocks,
            firstdata,
            log_zone_size,
            max_file,
            zones,
            magic,
            blocksize,
            subversion,
        )

    @classmethod
    def size(cls) -> int:
        return struct.calcsize(cls._fmt)

    @property
    def zone_size(self) -> int:
        return self.blocksize << self.log_zone_size

    @property
    def inode_table_start_block(self) -> int:
        return RESERVED_BLOCKS + self.i_blocks + self.z_blocks

    @property
    def inodes_per_block(self) -> int:
        return self.blocksize // INODE_SIZE

    @property
    def entries_per_zone(self) -> int:
        return self.zone_size // DIRENT_SIZE

    @property
    def direct_capacity(self) -> int:
        """Largest file size reachable through the direct zones alone."""
        return DIRECT_ZONES * self.zone_size

    @property
    def byte_reversed(self) -> bool:
        return self.magic == MINIX_MAGIC_REVERSED


@attr.s(auto_attribs=True)
class Inode:
    mode: int
    links: int
    uid: int
    gid: int
    size: int
    atime: int
    mtime: int
    ctime: int
    zone: List[int] = attr.ib(factory=lambda: [0] * DIRECT_ZONES)
    indirect: int = 0
    double_indirect: int = 0

    _fmt = "<HHHHIIII7IIII"

    def pack(self) -> bytes:
        zones = list(self.zone) + [0] * (DIRECT_ZONES - len(self.zone))
        return struct.pack(
            self._fmt,
            self.mode,
            self.links,
            self.uid,
            self.gid,
            self.size,
            self.atime,
            self.mtime,
            self.ctime,
            *zones[:DIRECT_ZONES],
            self.indirect,
            self.double_indirect,
            0,  # unused
        )

    @classmethod
    def unpack(cls, data: bytes) -> "Inode":
        fields = struct.unpack(cls._fmt, data[:INODE_SIZE])
        mode, links, uid, gid, size, atime, mtime, ctime = fields[:8]
        zone = list(fields[8 : 8 + DIRECT_ZONES])
        indirect, double_indirect, _unused = fields[8 + DIRECT_ZONES :]
        return cls(mode, links, uid, gid, size, atime, mtime, ctime, zone, indirect, double_indirect)

    @property
    def file_type(self) -> int:
        return self.mode & S_IFMT

    @property
    def is_directory(self) -> bool:
        return self.file_type == S_IFDIR

    @property
    def is_regular_file(self) -> bool:
        return self.file_type == S_IFREG


@attr.s(auto_attribs=True)
class DirEntry:
    """Fixed-size directory record: inode number and a null-padded name field."""

    inode_num: int
    name: bytes

    _fmt = "<I%ds" % DIRENT_NAME_SIZE

    def pack(self) -> bytes:
        if len(self.name) > DIRENT_NAME_SIZE:
            raise ValueError(f"Name longer than {DIRENT_NAME_SIZE} bytes: {self.name!r}")
        # struct pads the name field with NULs
        return struct.pack(self._fmt, self.inode_num, self.name)

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "DirEntry":
        inode_num, raw_name = struct.unpack_from(cls._fmt, data, offset)
        # A name that fills the whole field carries no terminating NUL
        name = raw_name.split(b"\x00", 1)[0]
        return cls(inode_num, name)

    @property
    def filename(self) -> str:
        return self.name.decode("utf-8", errors="surrogateescape")
