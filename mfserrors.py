from typing import Optional


class MinixError(Exception):
    """Base class for every failure raised while reading a MINIX image."""


class FormatError(MinixError, ValueError):
    """The image does not hold the structure expected at this offset."""


class InvalidArgument(MinixError, ValueError):
    """Out-of-range partition, subpartition or inode number."""


class ImageReadError(MinixError, OSError):
    """Seek failure or short read against the image."""

    def __init__(self, message: str, offset: int = 0, expected: int = 0, got: int = 0):
        super().__init__(message)
        self.offset = offset
        self.expected = expected
        self.got = got


class PathError(MinixError):
    """Failure tied to one component of a path being resolved."""

    def __init__(self, message: str, component: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message)
        self.component = component
        self.path = path


class NotADirectory(PathError, NotADirectoryError):
    pass


class NotAFile(PathError, OSError):
    pass


class NotFound(PathError, FileNotFoundError):
    pass


class TruncatedExtraction(MinixError, OSError):
    """The file continues past its direct zones; only the direct part was written."""

    def __init__(self, message: str, size: int, written: int):
        super().__init__(message)
        self.size = size
        self.written = written
