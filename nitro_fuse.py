#!/usr/bin/env python3
"""
NitroROM FUSE Filesystem Implementation.

This module provides a read-only FUSE (Filesystem in Userspace) interface for
Nintendo DS cartridge images and NARC archives. It allows mounting .nds and
.narc files as local directories, enabling standard file operations (ls, cp,
cat, etc.) on the files they contain.

Dependencies:
    - fusepy
    - nitro_driver
"""

import os
import sys
import errno
import math
import time
import logging
import argparse

# Configure FUSE library path for macOS with FUSE-T
if sys.platform == 'darwin' and not os.environ.get('FUSE_LIBRARY_PATH'):
    if os.path.exists('/usr/local/lib/libfuse-t.dylib'):
        os.environ['FUSE_LIBRARY_PATH'] = '/usr/local/lib/libfuse-t.dylib'

from fuse import FUSE, FuseOSError, Operations
from nitro_driver import detect_format

logger = logging.getLogger(__name__)

BLOCK_SIZE = 512
NAME_MAX = 127  # sub-table names are at most 7 bits long


class NitroFUSE(Operations):
    """
    FUSE Operations implementation for NitroROM filesystems.

    The directory tree is read once at mount time. Paths are resolved with
    ``Directory.search`` and cached. All write operations fail with EROFS.
    """
    def __init__(self, image_path):
        self.image_path = image_path
        self.image = detect_format(image_path)
        try:
            self.fs = self.image.file_system()
            self.root = self.fs.root_dir()
        except OSError:
            self.image.close()
            raise
        self.mount_time = time.time()
        self.entries = {}  # path -> entry
        print(f"Mounted {image_path} ({self.image.get_format()})")

    def _lookup(self, path):
        if path == '/':
            return self.root
        entry = self.entries.get(path)
        if entry is None:
            entry = self.root.search(path)
            if entry is None:
                raise FuseOSError(errno.ENOENT)
            self.entries[path] = entry
        return entry

    def _read_only(self, *args, **kwargs):
        raise FuseOSError(errno.EROFS)

    def getattr(self, path, fh=None):
        entry = self._lookup(path)
        times = dict(st_ctime=self.mount_time, st_mtime=self.mount_time, st_atime=self.mount_time)
        if entry.is_dir:
            return dict(st_mode=(0o40555), st_nlink=2, st_size=0, **times)
        return dict(st_mode=(0o100444), st_nlink=1, st_size=entry.length, **times)

    def readdir(self, path, fh):
        entry = self._lookup(path)
        if not entry.is_dir:
            raise FuseOSError(errno.ENOTDIR)
        return ['.', '..'] + [child.name for child in entry]

    def open(self, path, flags):
        entry = self._lookup(path)
        if (flags & os.O_WRONLY) or (flags & os.O_RDWR):
            raise FuseOSError(errno.EROFS)
        if entry.is_dir:
            raise FuseOSError(errno.EISDIR)
        return 0

    def read(self, path, length, offset, fh):
        entry = self._lookup(path)
        if entry.is_dir:
            raise FuseOSError(errno.EISDIR)
        try:
            return self.fs.read_contents(entry, offset, length)
        except OSError as e:
            logger.error("Reading %s failed: %s", path, e)
            raise FuseOSError(errno.EIO)

    def access(self, path, mode):
        self._lookup(path)
        if mode & os.W_OK:
            raise FuseOSError(errno.EROFS)
        return 0

    def statfs(self, path):
        blocks = math.ceil(self.image.file_size / BLOCK_SIZE)
        return dict(f_bsize=BLOCK_SIZE, f_frsize=BLOCK_SIZE, f_blocks=blocks,
                    f_bfree=0, f_bavail=0, f_namemax=NAME_MAX)

    def destroy(self, path):
        self.image.close()

    create = _read_only
    write = _read_only
    truncate = _read_only
    unlink = _read_only
    mkdir = _read_only
    rmdir = _read_only
    rename = _read_only
    chmod = _read_only
    chown = _read_only
    utimens = _read_only


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Mount Nintendo DS cartridge images and NARC archives as a read-only FUSE filesystem.",
        epilog="Example: nitromount game.nds ./mnt"
    )
    parser.add_argument("image", help="Path to the image file (.nds, .narc)")
    parser.add_argument("mountpoint", help="Directory to mount the filesystem")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--foreground", "-f", action="store_true", help="Run in foreground (default: False)")

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if not os.path.exists(args.mountpoint):
        print(f"Error: Mount point '{args.mountpoint}' does not exist.")
        return 1

    try:
        operations = NitroFUSE(args.image)
    except OSError as e:
        print(f"Failed to read {args.image}: {e}")
        return 1

    try:
        # The byte source has a single cursor, so FUSE must not use threads.
        FUSE(operations, args.mountpoint, foreground=args.foreground, ro=True, nothreads=True)
    except RuntimeError as e:
        print(f"Failed to mount: {e}")
        print("Ensure FUSE-T or macFUSE is installed and libfuse is available.")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
