#!/usr/bin/env python3
"""
NitroROM Filesystem Driver Module.

This module reads the filesystem layout of Nintendo DS cartridge images (.nds)
and Nitro Archives (.narc). Files are described by their location and length
within the image; contents are only read on request.

Classes:
    ByteSource: Little-endian reader over a seekable binary stream.
    NitroFormatError: Raised when an image contains malformed data.
    Entry: Base class of the filesystem tree nodes.
    File: A file entry (offset and length within the image).
    Directory: A directory entry holding an ordered list of entries.
    FsTraversal: Depth-annotated iterator over a directory tree.
    NitroArcChunk: Descriptor of one chunk of a NARC container.
    NitroFileSystem: Table-root locator and tree builder.
    NitroImage: Base class for image files on disk.
    Cartridge: Handler for cartridge ROM images.
    NarcImage: Handler for standalone NARC files.

Functions:
    detect_format(filename): Returns the appropriate NitroImage object for a file.
"""

import os
import sys
import errno
import struct
import logging
import argparse
from collections import deque

logger = logging.getLogger(__name__)

# Cartridge header fields
FNT_OFFSET_FIELD = 0x40
FNT_SIZE_FIELD = 0x44
FAT_OFFSET_FIELD = 0x48
FAT_SIZE_FIELD = 0x4C

# Table layout
FNT_ENTRY_SIZE = 8
FAT_ENTRY_SIZE = 8
SUBDIR_ID_MASK = 0x0FFF
DIR_FLAG = 0x80
NAME_LENGTH_MASK = 0x7F

# NARC container
NARC_MAGIC = "NARC"
NARC_VERSION = 0x0100
NARC_CHUNK_COUNT = 3
CHUNK_HEADER_SIZE = 8


class NitroFormatError(OSError):
    """Malformed or unsupported data in a NitroROM image or NARC archive."""
    def __init__(self, message):
        super().__init__(errno.EINVAL, message)


class ByteSource:
    """
    Sequential and random-access reader over a seekable binary stream.

    All integers and floats are little-endian. Sequential reads advance the
    stream cursor; the ``*_at`` variants read at an absolute offset and leave
    the cursor where it was.

    Attributes:
        stream: The underlying binary file object (a file or ``io.BytesIO``).
    """
    def __init__(self, stream):
        self.stream = stream

    def tell(self):
        return self.stream.tell()

    def seek(self, offset):
        self.stream.seek(offset)

    def skip(self, count):
        """Discard ``count`` bytes from the source."""
        self.stream.seek(count, os.SEEK_CUR)

    def close(self):
        self.stream.close()

    def read_bytes(self, length):
        """
        Read exactly ``length`` bytes.

        Raises:
            OSError: EIO if the stream ends before ``length`` bytes are read.
        """
        position = self.stream.tell()
        data = self.stream.read(length)
        if len(data) != length:
            raise OSError(errno.EIO,
                          f"Short read at 0x{position:X}: expected {length} bytes, got {len(data)}")
        return data

    def read_string(self, length):
        """Read a ``length``-byte UTF-8 encoded string."""
        data = self.read_bytes(length)
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise NitroFormatError(f"Invalid UTF-8 string {data!r}: {e}") from e

    def _unpack(self, fmt):
        return struct.unpack(fmt, self.read_bytes(struct.calcsize(fmt)))[0]

    def read_u8(self): return self._unpack('<B')
    def read_i8(self): return self._unpack('<b')
    def read_u16(self): return self._unpack('<H')
    def read_i16(self): return self._unpack('<h')
    def read_u32(self): return self._unpack('<I')
    def read_i32(self): return self._unpack('<i')
    def read_u64(self): return self._unpack('<Q')
    def read_i64(self): return self._unpack('<q')
    def read_f32(self): return self._unpack('<f')
    def read_f64(self): return self._unpack('<d')

    def _at(self, offset, read, *args):
        saved = self.stream.tell()
        self.stream.seek(offset)
        try:
            return read(*args)
        finally:
            self.stream.seek(saved)

    def read_bytes_at(self, length, offset): return self._at(offset, self.read_bytes, length)
    def read_string_at(self, length, offset): return self._at(offset, self.read_string, length)
    def read_u8_at(self, offset): return self._at(offset, self.read_u8)
    def read_i8_at(self, offset): return self._at(offset, self.read_i8)
    def read_u16_at(self, offset): return self._at(offset, self.read_u16)
    def read_i16_at(self, offset): return self._at(offset, self.read_i16)
    def read_u32_at(self, offset): return self._at(offset, self.read_u32)
    def read_i32_at(self, offset): return self._at(offset, self.read_i32)
    def read_u64_at(self, offset): return self._at(offset, self.read_u64)
    def read_i64_at(self, offset): return self._at(offset, self.read_i64)
    def read_f32_at(self, offset): return self._at(offset, self.read_f32)
    def read_f64_at(self, offset): return self._at(offset, self.read_f64)


class Entry:
    """Base class for filesystem entries. Use ``is_dir`` to tell them apart."""
    is_dir = False

    def __init__(self, name):
        self._name = name

    @property
    def name(self):
        return self._name


class File(Entry):
    """
    A file stored within a NitroROM filesystem.

    Attributes:
        name (str): File name.
        offset (int): Absolute offset of the contents within the image.
        length (int): Length of the contents in bytes.
    """
    def __init__(self, name, offset, length):
        super().__init__(name)
        self._offset = offset
        self._length = length

    @property
    def offset(self):
        return self._offset

    @property
    def length(self):
        return self._length

    def __repr__(self):
        return f"File(name={self._name!r}, offset=0x{self._offset:X}, length={self._length})"


class Directory(Entry):
    """
    A directory stored within a NitroROM filesystem.

    Entries keep the order of the directory's FNT sub-table. Two directories
    may share one entry list when the name table links a subdirectory back to
    an ancestor; such a tree is cyclic and its traversal never ends.
    """
    is_dir = True

    def __init__(self, name, entries):
        super().__init__(name)
        self._entries = entries

    @property
    def entries(self):
        return tuple(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def __len__(self):
        return len(self._entries)

    def __repr__(self):
        return f"Directory(name={self._name!r}, entries={len(self._entries)})"

    def traverse(self):
        """Traverse the entries below this directory. See ``FsTraversal``."""
        return FsTraversal(self)

    def search(self, path):
        """
        Search for the entry at a slash-separated path relative to this directory.

        Empty and ``.`` components are ignored, so ``"/a//b"`` finds ``a/b``.
        A path with no components (``""`` or ``"/"``) names this directory
        itself, which is not one of its own entries, and yields None.

        Args:
            path (str): Path such as ``"data/weather_sys.narc"``.

        Returns:
            Entry: The first matching entry, or None if there is none.
        """
        target = [part for part in path.split('/') if part not in ('', '.')]
        if not target:
            return None

        curr_depth = 0
        stack = []
        for depth, entry in self.traverse():
            if entry.is_dir:
                # Pop names until we are back at the parent level. A sibling
                # has depth == curr_depth, a subdirectory curr_depth < depth.
                while curr_depth >= depth:
                    stack.pop()
                    curr_depth -= 1
                stack.append(entry.name)
                curr_depth = depth
                if stack == target:
                    return entry
            elif len(stack) + 1 == len(target) and stack + [entry.name] == target:
                return entry
        return None


class FsTraversal:
    """
    Iterator over the entries below a directory, yielding ``(depth, entry)``.

    Files of the start directory come first, in declaration order, at depth 0.
    After that the most recently discovered directory is expanded next: it is
    yielded, then its own files at the same depth, and its subdirectories are
    queued one level deeper. A directory is always yielded before any of its
    descendants and its files always come before its subdirectories.

    Sibling order is NOT preserved: sibling directories come out in reverse
    declaration order, and so do the files of every expanded subdirectory.
    Consumers that need declaration order must iterate ``Directory.entries``.

    If the tree is cyclic, the iterator is infinite.
    """
    def __init__(self, start):
        self.depth = 0
        self.dir_files = deque()
        self.to_visit = []
        for entry in start:
            if entry.is_dir:
                self.to_visit.append((1, entry))
            else:
                self.dir_files.append(entry)

    def __iter__(self):
        return self

    def __next__(self):
        # First, the files of the current directory.
        if self.dir_files:
            return self.depth, self.dir_files.popleft()

        # Once we run out of files, the next subdirectory.
        if not self.to_visit:
            raise StopIteration
        depth, directory = self.to_visit.pop()
        for entry in directory:
            if entry.is_dir:
                self.to_visit.append((depth + 1, entry))
            else:
                self.dir_files.appendleft(entry)
        self.depth = depth
        return depth, directory


class NitroArcChunk:
    """
    Descriptor of a NARC chunk.

    Attributes:
        offset (int): Absolute offset of the chunk (its 4-byte tag).
        length (int): Declared chunk length in bytes, header included.
    """
    def __init__(self, offset, length):
        self.offset = offset
        self.length = length

    @property
    def data_offset(self):
        """Absolute offset of the chunk payload, past the tag and length."""
        return self.offset + CHUNK_HEADER_SIZE

    def __repr__(self):
        return f"NitroArcChunk(offset=0x{self.offset:X}, length={self.length})"

    @classmethod
    def read(cls, source, name):
        """
        Read a chunk with the expected tag at the current cursor.

        On success the cursor is positioned at the end of the chunk. On a tag
        mismatch only the tag has been consumed.

        Raises:
            NitroFormatError: If the tag differs from ``name`` or the declared
                length cannot hold the chunk header.
        """
        offset = source.tell()
        actual_name = source.read_string(4)
        if actual_name != name:
            raise NitroFormatError(f"Incorrect NARC chunk name '{actual_name}', expected '{name}'")
        length = source.read_u32()
        if length < CHUNK_HEADER_SIZE:
            raise NitroFormatError(f"NARC chunk '{name}' has length {length}, expected at least {CHUNK_HEADER_SIZE}")
        source.seek(offset + length)  # skip contents
        chunk = cls(offset, length)
        logger.debug("Read %s %r", name, chunk)
        return chunk


class NitroFileSystem:
    """
    The table roots of a NitroROM filesystem and the tree builder over them.

    The filesystem owns the cursor of its ``ByteSource`` while building. Any
    method that reads leaves the cursor position unspecified unless its
    docstring says otherwise.

    Attributes:
        source (ByteSource): The image being read.
        fnt_offset (int): Absolute offset of the File Name Table (FNT).
        fat_offset (int): Absolute offset of the File Allocation Table (FAT).
        image_offset (int): Absolute offset that FAT entries are relative to.
            Zero for a cartridge, the GMIF payload for an archive.
        file_count (int): Number of FAT entries, or None if unknown.
    """
    def __init__(self, source, fnt_offset, fat_offset, image_offset=0, file_count=None):
        self.source = source
        self.fnt_offset = fnt_offset
        self.fat_offset = fat_offset
        self.image_offset = image_offset
        self.file_count = file_count
        # dir_id -> entry list of directories currently being read
        self._open_dirs = {}

    def __repr__(self):
        return (f"NitroFileSystem(fnt_offset=0x{self.fnt_offset:X}, fat_offset=0x{self.fat_offset:X}, "
                f"image_offset=0x{self.image_offset:X}, file_count={self.file_count})")

    @classmethod
    def from_rom(cls, source):
        """
        Locate the main NitroROM filesystem of a cartridge image.

        The cursor is not affected.
        """
        fnt_offset = source.read_u32_at(FNT_OFFSET_FIELD)
        fnt_size = source.read_u32_at(FNT_SIZE_FIELD)
        fat_offset = source.read_u32_at(FAT_OFFSET_FIELD)
        fat_size = source.read_u32_at(FAT_SIZE_FIELD)
        logger.debug("ROM FNT at 0x%X (%d bytes), FAT at 0x%X (%d bytes)",
                     fnt_offset, fnt_size, fat_offset, fat_size)
        # FAT offsets are relative to the ROM start.
        return cls(source, fnt_offset, fat_offset, 0, fat_size // FAT_ENTRY_SIZE)

    @classmethod
    def from_archive(cls, source):
        """
        Read a Nitro Archive (NARC) starting at the current cursor.

        A NARC is a header followed by three chunks: the FAT (BTAF), the FNT
        (BTNF) and the image holding the file contents (GMIF).

        On success the cursor is positioned at the end of the archive. On
        failure nothing past the offending field has been consumed.

        Raises:
            NitroFormatError: On a wrong signature, version, chunk count or
                chunk tag.
        """
        file_sig = source.read_string(4)
        if file_sig != NARC_MAGIC:
            raise NitroFormatError(f"Incorrect file signature '{file_sig}', expected '{NARC_MAGIC}'")
        source.skip(2)  # byte order
        version = source.read_u16()
        if version != NARC_VERSION:
            raise NitroFormatError(f"Unknown NARC file version 0x{version:04X}, expected 0x{NARC_VERSION:04X}")
        source.skip(6)  # file size, header size
        chunk_count = source.read_u16()
        if chunk_count != NARC_CHUNK_COUNT:
            raise NitroFormatError(f"NARC file has {chunk_count} chunks, expected {NARC_CHUNK_COUNT}")

        fat = NitroArcChunk.read(source, "BTAF")
        fnt = NitroArcChunk.read(source, "BTNF")
        image = NitroArcChunk.read(source, "GMIF")

        # The BTAF payload starts with the file count, followed by the entries.
        file_count = source.read_u32_at(fat.data_offset)
        return cls(source, fnt.data_offset, fat.data_offset + 4, image.data_offset, file_count)

    def fat_entry_offset(self, file_id):
        """Absolute offset of the FAT entry of the file with the given ID."""
        return self.fat_offset + file_id * FAT_ENTRY_SIZE

    def fnt_entry_offset(self, dir_id):
        """Absolute offset of the FNT main table entry of the given directory."""
        return self.fnt_offset + dir_id * FNT_ENTRY_SIZE

    def root_dir(self):
        """
        Read the whole directory tree, starting at the root directory.

        Each directory has a main table entry (sub-table offset, first file
        ID, parent ID) and a sub-table listing the names of its entries. File
        IDs are assigned sequentially within each directory starting at the
        first file ID, and index the FAT.

        Returns:
            Directory: The root directory, named ``root``.
        """
        self._open_dirs = {}
        self.source.seek(self.fnt_offset)
        return self.read_directory("root", 0)

    def read_directory(self, name, dir_id):
        """
        Read a directory and, recursively, everything below it.

        The cursor must point to the FNT main table entry of ``dir_id``. On
        success the cursor is positioned at the end of the directory's
        sub-table.
        """
        sub_table_offset = self.fnt_offset + self.source.read_u32()
        first_file_id = self.source.read_u16()
        if dir_id == 0 and not self._open_dirs:
            # Unlike all other entries, the root's third field is the total
            # number of directories, not a parent ID.
            logger.debug("FNT holds %d directories", self.source.read_u16())

        entries = []
        self._open_dirs[dir_id] = entries
        self.source.seek(sub_table_offset)
        self.read_sub_table(first_file_id, entries)
        del self._open_dirs[dir_id]
        return Directory(name, entries)

    def read_sub_table(self, file_id, entries=None):
        """
        Read the entries of an FNT sub-table.

        The cursor must point to the first sub-table entry; ``file_id`` is the
        ID of the first file in the sub-table, if any. On success the cursor
        is positioned at the end of the sub-table.

        Returns:
            list: The entries, appended to ``entries`` if given.
        """
        if entries is None:
            entries = []
        while True:
            # 1-byte header: bit 7 set for a subdirectory, low bits the name
            # length. A subdirectory's name is followed by its FNT index.
            header = self.source.read_u8()
            if header == 0:
                break  # end of sub-table
            if header == DIR_FLAG:
                continue  # reserved
            name = self.source.read_string(header & NAME_LENGTH_MASK)
            entry_end = self.source.tell()

            if not header & DIR_FLAG:
                entry = self.read_file_entry(name, file_id)
                file_id += 1
            else:
                subdir_id = self.source.read_u16() & SUBDIR_ID_MASK
                entry_end += 2
                shared = self._open_dirs.get(subdir_id)
                if shared is not None:
                    logger.debug("Directory '%s' links back to open directory %d", name, subdir_id)
                    entry = Directory(name, shared)
                else:
                    self.source.seek(self.fnt_entry_offset(subdir_id))
                    entry = self.read_directory(name, subdir_id)
            entries.append(entry)

            # Reading the FAT or a subdirectory moved the cursor elsewhere.
            self.source.seek(entry_end)
        return entries

    def read_file_entry(self, name, file_id):
        """
        Read the FAT entry of a file. The cursor is left after the entry.

        Raises:
            NitroFormatError: If the ID is past the end of the FAT or the end
                offset precedes the start offset.
        """
        if self.file_count is not None and file_id >= self.file_count:
            raise NitroFormatError(f"File '{name}' has ID {file_id}, but the FAT holds {self.file_count} entries")
        self.source.seek(self.fat_entry_offset(file_id))
        start = self.source.read_u32()  # relative to the image base
        end = self.source.read_u32()
        if end < start:
            raise NitroFormatError(f"File '{name}' ends at 0x{end:X}, before its start 0x{start:X}")
        # End offsets are exclusive.
        return File(name, self.image_offset + start, end - start)

    def read_contents(self, file, offset=0, length=None):
        """
        Read the contents of a file, or a slice of them.

        Args:
            file (File): The file to read.
            offset (int): Offset within the file.
            length (int): Maximum number of bytes, or None for the rest.

        Returns:
            bytes: The data, empty if ``offset`` is past the end of the file.
        """
        if offset >= file.length:
            return b''
        available = file.length - offset
        if length is None or length > available:
            length = available
        self.source.seek(file.offset + offset)
        return self.source.read_bytes(length)

    def open_archive(self, file):
        """Open a NARC stored as a file of this filesystem, sharing the source."""
        self.source.seek(file.offset)
        return NitroFileSystem.from_archive(self.source)

    def close(self):
        self.source.close()


class NitroImage:
    """
    Base class for Nitro image files on disk.

    Attributes:
        filename (str): Path to the image file.
        file_size (int): Size of the image in bytes.
        source (ByteSource): Reader over the open file.
    """
    def __init__(self, filename):
        self.filename = filename
        self.file_size = os.path.getsize(filename)
        self.source = ByteSource(open(filename, 'rb'))

    def file_system(self):
        """Locate the filesystem of the image."""
        raise NotImplementedError

    def get_format(self):
        """Return a string describing the image format."""
        raise NotImplementedError

    def close(self):
        self.source.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class Cartridge(NitroImage):
    """Nintendo DS cartridge ROM image (.nds)."""
    def file_system(self):
        return NitroFileSystem.from_rom(self.source)

    def get_format(self):
        return "NitroROM cartridge"


class NarcImage(NitroImage):
    """Standalone Nitro Archive (.narc)."""
    def file_system(self):
        self.source.seek(0)
        return NitroFileSystem.from_archive(self.source)

    def get_format(self):
        return "Nitro Archive (NARC)"


def detect_format(filename):
    with open(filename, 'rb') as f:
        magic = f.read(4)
    if magic == NARC_MAGIC.encode('ascii'):
        return NarcImage(filename)
    return Cartridge(filename)


def print_tree(directory):
    for depth, entry in directory.traverse():
        prefix = "  " * depth
        if entry.is_dir:
            print(f"{prefix}- {entry.name}/")
        else:
            print(f"{prefix}- {entry.name:<24}  0x{entry.offset:08X}  {entry.length:>8} bytes")


def extract_tree(fs, directory, dest_dir):
    """Write every file below ``directory`` into ``dest_dir``. Returns the file count."""
    count = 0
    for entry in directory:
        safe_name = entry.name.replace('/', '_').replace('\\', '_')
        if safe_name in ('', '.', '..'):
            logger.warning("Skipping entry with unsafe name %r", entry.name)
            continue
        out_path = os.path.join(dest_dir, safe_name)
        if entry.is_dir:
            os.makedirs(out_path, exist_ok=True)
            count += extract_tree(fs, entry, out_path)
        else:
            logger.debug("Extracting %s (%d bytes)", out_path, entry.length)
            with open(out_path, 'wb') as out_f:
                out_f.write(fs.read_contents(entry))
            count += 1
    return count


def main(argv=None):
    # Allow overriding program name via environment variable (for wrapper scripts)
    prog_name = os.environ.get("NITRO_PROG_NAME")

    parser = argparse.ArgumentParser(
        prog=prog_name,
        description="List, read and extract the files of NitroROM images and NARC archives."
    )
    parser.add_argument("image", help="Cartridge image (.nds) or archive (.narc)")
    parser.add_argument("command", nargs="?", default="list", choices=["list", "read", "extract"],
                        help="Action to perform (default: list)")
    parser.add_argument("target", nargs="?", help="File path for 'read', destination directory for 'extract'")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if args.command != "list" and not args.target:
        parser.error(f"'{args.command}' requires a target")

    if not os.path.exists(args.image):
        print(f"Error: File '{args.image}' not found.")
        return 1

    try:
        with detect_format(args.image) as image:
            print(f"Detected Format: {image.get_format()}")
            fs = image.file_system()
            root = fs.root_dir()

            if args.command == "list":
                print_tree(root)

            elif args.command == "read":
                entry = root.search(args.target)
                if entry is None:
                    print(f"Error: '{args.target}' not found.")
                    return 1
                if entry.is_dir:
                    print(f"Error: '{args.target}' is a directory.")
                    return 1
                content = fs.read_contents(entry)
                print(f"Read {len(content)} bytes from 0x{entry.offset:08X}.")
                print(content[:500].decode('utf-8', errors='replace'))

            elif args.command == "extract":
                os.makedirs(args.target, exist_ok=True)
                print(f"Extracting all files to {args.target}...")
                count = extract_tree(fs, root, args.target)
                print(f"Extracted {count} files.")

    except OSError as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
