import io
import posixpath
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple, Union

from loguru import logger

from mfs import (
    BOOT_SIGNATURE,
    BOOT_SIGNATURE_OFFSET,
    DIRENT_NAME_SIZE,
    DIRENT_SIZE,
    INODE_SIZE,
    MAX_ZONE_SIZE,
    MINIX_MAGIC,
    MINIX_MAGIC_REVERSED,
    MINIX_PARTITION_TYPE,
    PARTITION_COUNT,
    ROOT_INODE,
    S_IFDIR,
    S_IFMT,
    SECTOR_SIZE,
    SUPERBLOCK_OFFSET,
    DirEntry,
    Inode,
    PartitionEntry,
    Superblock,
    unpack_partition_table,
)
from mfserrors import (
    FormatError,
    ImageReadError,
    InvalidArgument,
    NotADirectory,
    NotAFile,
    NotFound,
    TruncatedExtraction,
)

ListingRow = Tuple[str, int, str]


def _read_at(image: BinaryIO, offset: int, size: int) -> bytes:
    """Seek to an absolute offset and read exactly size bytes"""
    try:
        image.seek(offset)
        data = image.read(size)
    except (OSError, ValueError, OverflowError) as e:
        raise ImageReadError(
            f"Cannot read {size} bytes at offset {offset}: {e}", offset, size, 0
        ) from e

    if len(data) != size:
        raise ImageReadError(
            f"Short read at offset {offset}: expected {size} bytes, got {len(data)}",
            offset,
            size,
            len(data),
        )
    return data


# Partition locator


def read_partition_table(image: BinaryIO, offset: int = 0) -> List[PartitionEntry]:
    """Read the partition table held in the sector at offset"""
    sector = _read_at(image, offset, SECTOR_SIZE)
    signature = sector[BOOT_SIGNATURE_OFFSET:SECTOR_SIZE]
    if signature != BOOT_SIGNATURE:
        raise FormatError(
            f"Invalid partition table signature at offset {offset}: {signature.hex()}"
        )
    return unpack_partition_table(sector)


def _check_index(value: int, what: str):
    if not 0 <= value < PARTITION_COUNT:
        raise InvalidArgument(f"Invalid {what} number: {value} (expected 0-{PARTITION_COUNT - 1})")


def locate(
    image: BinaryIO, partition: Optional[int] = None, subpartition: Optional[int] = None
) -> int:
    """
    Compute the byte offset of the filesystem inside the image.

    With no partition selected the whole image is the filesystem (offset 0).
    A subpartition is looked up in the table found in the first sector of the
    primary partition, and its first sector is taken as absolute.
    """
    if partition is None:
        if subpartition is not None:
            raise InvalidArgument("A subpartition needs a primary partition")
        return 0

    _check_index(partition, "primary partition")
    if subpartition is not None:
        _check_index(subpartition, "subpartition")

    entry = read_partition_table(image)[partition]
    _warn_if_not_minix(entry, f"partition {partition}")
    offset = entry.byte_offset
    logger.debug(
        "Partition {}: first_sector={}, size={}, offset={}",
        partition,
        entry.first_sector,
        entry.size,
        offset,
    )

    if subpartition is not None:
        sub_entry = read_partition_table(image, offset)[subpartition]
        _warn_if_not_minix(sub_entry, f"subpartition {subpartition}")
        offset = sub_entry.byte_offset
        logger.debug(
            "Subpartition {}: first_sector={}, size={}, offset={}",
            subpartition,
            sub_entry.first_sector,
            sub_entry.size,
            offset,
        )

    return offset


def _warn_if_not_minix(entry: PartitionEntry, label: str):
    if entry.type != MINIX_PARTITION_TYPE:
        logger.warning(
            "{} has type 0x{:02x}, not a MINIX partition (0x{:02x})",
            label.capitalize(),
            entry.type,
            MINIX_PARTITION_TYPE,
        )


# Superblock reader


def read_superblock(image: BinaryIO, byte_offset: int = 0) -> Superblock:
    """Read and validate the superblock of the filesystem starting at byte_offset"""
    data = _read_at(image, byte_offset + SUPERBLOCK_OFFSET, Superblock.size())
    superblock = Superblock.unpack(data)

    if superblock.magic not in (MINIX_MAGIC, MINIX_MAGIC_REVERSED):
        raise FormatError(
            f"bad magic number 0x{superblock.magic:04x}: this doesn't look like a MINIX filesystem"
        )
    if superblock.byte_reversed:
        logger.warning(
            "Superblock magic is byte-reversed (0x{:04x}); the filesystem has the wrong endianness",
            superblock.magic,
        )

    if superblock.blocksize == 0 or superblock.blocksize % INODE_SIZE:
        raise FormatError(f"bad block size {superblock.blocksize}")
    if superblock.log_zone_size < 0 or superblock.zone_size > MAX_ZONE_SIZE:
        raise FormatError(f"bad zone size (log_zone_size={superblock.log_zone_size})")

    logger.debug(
        "Superblock at {}: ninodes={}, blocksize={}, zone_size={}, inode table at block {}",
        byte_offset + SUPERBLOCK_OFFSET,
        superblock.ninodes,
        superblock.blocksize,
        superblock.zone_size,
        superblock.inode_table_start_block,
    )
    return superblock


# Inode store


def inode_location(byte_offset: int, inode_num: int, superblock: Superblock) -> int:
    """Absolute image offset of an inode record"""
    inodes_per_block = superblock.inodes_per_block
    inode_block = superblock.inode_table_start_block + (inode_num - 1) // inodes_per_block
    inode_index = (inode_num - 1) % inodes_per_block
    return byte_offset + inode_block * superblock.blocksize + inode_index * INODE_SIZE


def read_inode(
    image: BinaryIO, byte_offset: int, inode_num: int, superblock: Superblock
) -> Inode:
    """Get inode by number"""
    if not 1 <= inode_num <= superblock.ninodes:
        raise InvalidArgument(
            f"Invalid inode number {inode_num} (filesystem has {superblock.ninodes} inodes)"
        )

    offset = inode_location(byte_offset, inode_num, superblock)
    inode = Inode.unpack(_read_at(image, offset, INODE_SIZE))
    logger.debug("Inode {} at {}: mode=0o{:o}, size={}", inode_num, offset, inode.mode, inode.size)
    return inode


# Directory resolver


def zone_location(byte_offset: int, zone_num: int, superblock: Superblock) -> int:
    return byte_offset + zone_num * superblock.zone_size


def _scan_directory(
    image: BinaryIO, byte_offset: int, dir_inode: Inode, superblock: Superblock
) -> Iterator[DirEntry]:
    zone_size = superblock.zone_size
    for zone_num in dir_inode.zone:
        if zone_num == 0:
            continue

        offset = zone_location(byte_offset, zone_num, superblock)
        logger.debug("Scanning directory zone {} at {}", zone_num, offset)
        zone_data = _read_at(image, offset, zone_size)

        for entry_offset in range(0, superblock.entries_per_zone * DIRENT_SIZE, DIRENT_SIZE):
            entry = DirEntry.unpack(zone_data, entry_offset)
            if entry.inode_num != 0:
                yield entry


def list_entries(
    image: BinaryIO, byte_offset: int, dir_inode: Inode, superblock: Superblock
) -> Iterator[Tuple[str, int]]:
    """
    Enumerate (name, inode number) pairs of a directory.

    Entries come in on-disk order and free slots (inode 0) are skipped.
    Every call starts a fresh scan that re-reads the zones from the image.
    """
    if not dir_inode.is_directory:
        raise NotADirectory(f"Not a directory (mode 0o{dir_inode.mode:o})")
    return (
        (entry.filename, entry.inode_num)
        for entry in _scan_directory(image, byte_offset, dir_inode, superblock)
    )


def find_entry(
    image: BinaryIO, byte_offset: int, dir_inode: Inode, name: str, superblock: Superblock
) -> Optional[int]:
    """Find name in a directory, return its inode number"""
    wanted = name.encode("utf-8", errors="surrogateescape")
    if len(wanted) > DIRENT_NAME_SIZE:
        return None
    for entry in _scan_directory(image, byte_offset, dir_inode, superblock):
        if entry.name == wanted:
            return entry.inode_num
    return None


def resolve_path(
    image: BinaryIO, byte_offset: int, path: str, superblock: Superblock
) -> Inode:
    """Resolve a slash-separated path, starting at the root inode"""
    current = read_inode(image, byte_offset, ROOT_INODE, superblock)
    if path == "/":
        return current

    walked = "/"
    for component in (c for c in path.split("/") if c):
        if not current.is_directory:
            raise NotADirectory(
                f"Not a directory: {walked} (looking up '{component}')",
                component=component,
                path=walked,
            )

        inode_num = find_entry(image, byte_offset, current, component, superblock)
        walked = posixpath.join(walked, component)
        if inode_num is None:
            raise NotFound(
                f"No such file or directory: {walked}", component=component, path=walked
            )

        current = read_inode(image, byte_offset, inode_num, superblock)

    return current


# File extractor


def read_file_contents(
    image: BinaryIO,
    byte_offset: int,
    file_inode: Inode,
    superblock: Superblock,
    sink: BinaryIO,
    path: Optional[str] = None,
) -> int:
    """
    Write the contents of a regular file to sink, returns the bytes written.

    Only the direct zones are read. A file that does not fit in them gets
    its first DIRECT_ZONES zones written before TruncatedExtraction is raised.
    """
    if not file_inode.is_regular_file:
        label = path or "inode"
        raise NotAFile(
            f"Not a regular file: {label} (mode 0o{file_inode.mode:o})", path=path
        )

    zone_size = superblock.zone_size
    remaining = file_inode.size
    written = 0

    for zone_num in file_inode.zone:
        if remaining == 0:
            break
        if zone_num == 0:
            continue

        to_read = min(remaining, zone_size)
        chunk = _read_at(image, zone_location(byte_offset, zone_num, superblock), to_read)
        sink.write(chunk)
        remaining -= to_read
        written += to_read

    if remaining > 0:
        raise TruncatedExtraction(
            f"File of {file_inode.size} bytes exceeds the direct zones; "
            f"only {written} bytes extracted",
            size=file_inode.size,
            written=written,
        )
    return written


# Listing and formatting


def format_permissions(mode: int) -> str:
    """ls-style permission string, e.g. drwxr-xr-x"""
    type_char = "d" if (mode & S_IFMT) == S_IFDIR else "-"
    bits = ""
    for shift in (6, 3, 0):
        triplet = (mode >> shift) & 0o7
        bits += "r" if triplet & 0o4 else "-"
        bits += "w" if triplet & 0o2 else "-"
        bits += "x" if triplet & 0o1 else "-"
    return type_char + bits


def list_path(
    image: BinaryIO,
    byte_offset: int,
    path: str,
    superblock: Superblock,
    inode: Optional[Inode] = None,
) -> List[ListingRow]:
    """
    (permissions, size, name) rows for a directory's entries, or for the file itself.

    Pass the inode when path has already been resolved to skip walking it again.
    """
    if inode is None:
        inode = resolve_path(image, byte_offset, path, superblock)
    if not inode.is_directory:
        return [(format_permissions(inode.mode), inode.size, path)]

    entries = list(list_entries(image, byte_offset, inode, superblock))
    rows = []
    for name, inode_num in entries:
        child = read_inode(image, byte_offset, inode_num, superblock)
        rows.append((format_permissions(child.mode), child.size, name))
    return rows


def superblock_summary(superblock: Superblock) -> Dict[str, int]:
    """Stored and computed superblock fields"""
    return {
        "ninodes": superblock.ninodes,
        "i_blocks": superblock.i_blocks,
        "z_blocks": superblock.z_blocks,
        "firstdata": superblock.firstdata,
        "log_zone_size": superblock.log_zone_size,
        "max_file": superblock.max_file,
        "magic": superblock.magic,
        "zones": superblock.zones,
        "blocksize": superblock.blocksize,
        "subversion": superblock.subversion,
        "zone_size": superblock.zone_size,
        "inode_table_start_block": superblock.inode_table_start_block,
        "inodes_per_block": superblock.inodes_per_block,
    }


def inode_summary(inode: Inode) -> Dict[str, Union[int, str, List[int]]]:
    return {
        "mode": inode.mode,
        "permissions": format_permissions(inode.mode),
        "type": inode.file_type,
        "links": inode.links,
        "uid": inode.uid,
        "gid": inode.gid,
        "size": inode.size,
        "atime": inode.atime,
        "mtime": inode.mtime,
        "ctime": inode.ctime,
        "zones": list(inode.zone),
        "indirect": inode.indirect,
        "double_indirect": inode.double_indirect,
    }


class MinixFilesystem:
    """Read-only MINIX V3 filesystem inside an open image"""

    def __init__(
        self,
        image: BinaryIO,
        partition: Optional[int] = None,
        subpartition: Optional[int] = None,
        owns_image: bool = False,
    ):
        self.image = image
        self.partition = partition
        self.subpartition = subpartition
        self._owns_image = owns_image

        self.offset = locate(image, partition, subpartition)
        self.superblock = read_superblock(image, self.offset)

    def inode(self, inode_num: int) -> Inode:
        return read_inode(self.image, self.offset, inode_num, self.superblock)

    def root(self) -> Inode:
        return self.inode(ROOT_INODE)

    def resolve(self, path: str) -> Inode:
        return resolve_path(self.image, self.offset, path, self.superblock)

    def entries(self, dir_inode: Inode) -> Iterator[Tuple[str, int]]:
        return list_entries(self.image, self.offset, dir_inode, self.superblock)

    def listdir(self, path: str = "/") -> List[Tuple[str, int]]:
        """List directory contents"""
        inode = self.resolve(path)
        if not inode.is_directory:
            raise NotADirectory(f"Not a directory: {path}", path=path)
        return list(self.entries(inode))

    def list_path(self, path: str = "/", inode: Optional[Inode] = None) -> List[ListingRow]:
        return list_path(self.image, self.offset, path, self.superblock, inode)

    def stat(self, path: str) -> Dict[str, Union[int, str, List[int]]]:
        """Get file/directory metadata"""
        return inode_summary(self.resolve(path))

    def read_file(self, path: str, sink: BinaryIO, inode: Optional[Inode] = None) -> int:
        if inode is None:
            inode = self.resolve(path)
        return read_file_contents(self.image, self.offset, inode, self.superblock, sink, path=path)

    def read_bytes(self, path: str) -> bytes:
        """Whole contents of a regular file"""
        buffer = io.BytesIO()
        self.read_file(path, buffer)
        return buffer.getvalue()

    def close(self):
        if self._owns_image and self.image:
            self.image.close()
        self.image = None

    def __enter__(self) -> "MinixFilesystem":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


def open_image(
    image_path: str, partition: Optional[int] = None, subpartition: Optional[int] = None
) -> MinixFilesystem:
    """Open an image file read-only and load its filesystem"""
    image_file = open(image_path, "rb")
    try:
        return MinixFilesystem(image_file, partition, subpartition, owns_image=True)
    except BaseException:
        image_file.close()
        raise
