"""Persisting model parameters in a small binary format.

Layout, all integers little-endian::

    b"LMNA" | version (uint8) | number of arrays (uint32)
    per array: key length (uint32) | key (utf-8)
               dtype length (uint8) | dtype name (ascii)
               ndim (uint8) | ndim x dimension (uint64)
               raw C-ordered data
"""

from __future__ import annotations

import logging
import os
import struct
from collections import OrderedDict
from collections.abc import Mapping
from typing import BinaryIO

from .backend import xp

logger = logging.getLogger(__name__)

_MAGIC = b"LMNA"
_VERSION = 1
_EXTENSION = ".lamina"
_SINGLE_KEY = "__single__"


def _check_path(file_path: str | os.PathLike[str]) -> str:
    path = os.fspath(file_path)
    if not path.endswith(_EXTENSION):
        raise ValueError(f'file_path must end with "{_EXTENSION}", got "{path}"')
    return path


def _read(f: BinaryIO, num_bytes: int) -> bytes:
    data = f.read(num_bytes)
    if len(data) != num_bytes:
        raise ValueError(f"Truncated file, expected {num_bytes} bytes but got {len(data)}")
    return data


def _unpack(f: BinaryIO, fmt: str) -> int:
    return struct.unpack(fmt, _read(f, struct.calcsize(fmt)))[0]


def save(
    data: xp.ndarray | Mapping[str, xp.ndarray],
    file_path: str | os.PathLike[str],
) -> None:
    """Save an array or a mapping of named arrays.

    Args:
        data (xp.ndarray | Mapping[str, xp.ndarray]): A single array, e.g.
            `network.parameters`, or named arrays, e.g.
            `network.get_parameters()`.
        file_path (str | os.PathLike[str]): Target path, must end with ".lamina".

    Raises:
        ValueError: If the path has the wrong extension.
        TypeError: If a mapping holds something other than arrays.
    """
    path = _check_path(file_path)

    if isinstance(data, Mapping):
        for key, value in data.items():
            if not isinstance(value, xp.ndarray):
                raise TypeError(
                    f'All values must be arrays, got "{type(value).__name__}" for "{key}"'
                )
        arrays = OrderedDict(data)
    else:
        arrays = OrderedDict([(_SINGLE_KEY, xp.asarray(data))])

    with open(path, "wb") as f:
        f.write(_MAGIC)
        f.write(struct.pack("<B", _VERSION))
        f.write(struct.pack("<I", len(arrays)))

        for key, value in arrays.items():
            arr = xp.ascontiguousarray(value)

            key_bytes = key.encode("utf-8")
            f.write(struct.pack("<I", len(key_bytes)))
            f.write(key_bytes)

            dtype_bytes = arr.dtype.name.encode("ascii")
            f.write(struct.pack("<B", len(dtype_bytes)))
            f.write(dtype_bytes)

            f.write(struct.pack("<B", arr.ndim))
            f.writelines(struct.pack("<Q", dim) for dim in arr.shape)

            f.write(arr.astype(arr.dtype.newbyteorder("<"), copy=False).tobytes())
    logger.debug(f'Saved {len(arrays)} arrays to "{path}"')


def load(file_path: str | os.PathLike[str]) -> xp.ndarray | OrderedDict[str, xp.ndarray]:
    """Load what `save` wrote.

    Args:
        file_path (str | os.PathLike[str]): Source path, must end with ".lamina".

    Raises:
        ValueError: If the extension, the magic bytes or the version are
            wrong, or the file is truncated.

    Returns:
        xp.ndarray | OrderedDict[str, xp.ndarray]: A single array if a single
            array was saved, otherwise the named arrays in their saved order.
    """
    path = _check_path(file_path)

    with open(path, "rb") as f:
        magic = f.read(len(_MAGIC))
        if magic != _MAGIC:
            raise ValueError(f"Invalid file format. Expected {_MAGIC!r} magic bytes, got {magic!r}")

        version = _unpack(f, "<B")
        if version != _VERSION:
            raise ValueError(f"Unsupported version {version}. Expected {_VERSION}")

        arrays: OrderedDict[str, xp.ndarray] = OrderedDict()
        for _ in range(_unpack(f, "<I")):
            key = _read(f, _unpack(f, "<I")).decode("utf-8")
            dtype = xp.dtype(_read(f, _unpack(f, "<B")).decode("ascii")).newbyteorder("<")
            shape = tuple(_unpack(f, "<Q") for _ in range(_unpack(f, "<B")))
            num_bytes = int(xp.prod(shape, dtype=xp.int64)) * dtype.itemsize
            # astype copies, frombuffer alone would give a read-only view
            arr = xp.frombuffer(_read(f, num_bytes), dtype=dtype).reshape(shape)
            arrays[key] = arr.astype(dtype.newbyteorder("="))

    logger.debug(f'Loaded {len(arrays)} arrays from "{path}"')
    if len(arrays) == 1 and _SINGLE_KEY in arrays:
        return arrays[_SINGLE_KEY]
    return arrays


__all__ = [
    "load",
    "save",
]
