import logging
from typing import Optional, Type

from ilgraph.exceptions import UnsupportedFormat

from .base import BaseLoader, BinaryImage, Permission, Segment
from .elf import ELF_MAGIC, ELFLoader
from .macho import FAT_MAGIC, MH_MAGIC, MH_MAGIC_64, MachoLoader
from .pe import PELoader

__all__ = [
    "BaseLoader",
    "BinaryImage",
    "ELFLoader",
    "MachoLoader",
    "PELoader",
    "Permission",
    "Segment",
    "detect_loader",
    "load_image",
]


def detect_loader(data: bytes) -> Type[BaseLoader]:
    """Select the loader by sniffing the magic value."""
    if data[:4] == ELF_MAGIC:
        return ELFLoader

    if data[:2] == b"MZ":
        return PELoader

    if len(data) >= 4:
        if int.from_bytes(data[:4], byteorder="little") in (MH_MAGIC, MH_MAGIC_64):
            return MachoLoader

        if int.from_bytes(data[:4], byteorder="big") == FAT_MAGIC:
            return MachoLoader

    raise UnsupportedFormat("Unknown image format", table="magic", offset=0)


def load_image(
    data: bytes,
    dump_base: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> BinaryImage:
    """Parse raw image bytes into a `BinaryImage`."""
    loader_class = detect_loader(data)
    return loader_class(data, dump_base=dump_base, logger=logger).load()
