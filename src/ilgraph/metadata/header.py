import logging
import struct
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ilgraph.const import METADATA_SANITY, SUPPORTED_VERSIONS
from ilgraph.exceptions import (
    MalformedMetadata,
    TruncatedMetadata,
    UnsupportedFormat,
    UnsupportedMetadataVersion,
)
from ilgraph.log import get_logger

from .layouts import MetadataLayout, candidate_layouts, get_layout


@dataclass
class MetadataHeader:
    sanity: int
    version: int
    layout: MetadataLayout
    tables: Dict[str, Tuple[int, int]]

    @property
    def layout_version(self) -> float:
        return self.layout.version

    def offset(self, table: str) -> int:
        return self.tables[table][0]

    def size(self, table: str) -> int:
        return self.tables[table][1]

    def count(self, table: str) -> int:
        return self.size(table) // self.layout.record_size(table)


def _read_tables(data: bytes, layout: MetadataLayout) -> Dict[str, Tuple[int, int]]:
    pairs = struct.unpack_from(f"<{2 * len(layout.header_tables)}I", data, 8)
    return {
        table: (pairs[2 * i], pairs[2 * i + 1])
        for i, table in enumerate(layout.header_tables)
    }


def _fits(data: bytes, layout: MetadataLayout) -> Tuple[bool, bool]:
    """Check a candidate layout against the blob.

    Return whether all tables are consistent with the layout and whether the
    first table starts right after the header.
    """
    if layout.header_size > len(data):
        return False, False

    tables = _read_tables(data, layout)
    first_offset = tables[layout.header_tables[0]][0]

    for table, (offset, size) in tables.items():
        if not size:
            continue

        if offset < layout.header_size or offset + size > len(data):
            return False, first_offset == layout.header_size

        if not layout.is_blob(table) and size % layout.record_size(table):
            return False, first_offset == layout.header_size

    return True, first_offset == layout.header_size


def _select_layout(
    data: bytes, version: int, logger: logging.Logger
) -> MetadataLayout:
    candidates = candidate_layouts(version)

    if not candidates:
        raise UnsupportedMetadataVersion(
            f"Unsupported metadata version {version}, "
            f"supported: {', '.join(str(v) for v in SUPPORTED_VERSIONS)}",
            table="header",
            offset=4,
        )

    if len(candidates) == 1:
        return candidates[0]

    ranked = []

    for layout in candidates:
        valid, exact = _fits(data, layout)
        ranked.append(((not valid, not exact), layout))

    ranked.sort(key=lambda item: item[0])
    best_rank, layout = ranked[0]

    ties = [other for rank, other in ranked if rank == best_rank]
    if len(ties) > 1:
        logger.warning(
            f"Metadata version {version} is ambiguous between "
            f"{', '.join(str(t.version) for t in ties)}, assume {layout.version}. "
            f"Use a version override if the result is wrong."
        )

    return layout


def parse_header(
    data: bytes,
    version_override: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> MetadataHeader:
    """Parse the metadata header and select the table layout.

    Fails with `UnsupportedFormat` on a sanity mismatch,
    `UnsupportedMetadataVersion` outside the supported set, and
    `TruncatedMetadata`/`MalformedMetadata` when a declared table does not fit
    the blob.
    """
    logger = logger or get_logger(__name__)

    if len(data) < 8:
        raise TruncatedMetadata("Metadata header is truncated", table="header", offset=0)

    sanity, version = struct.unpack_from("<Ii", data, 0)

    if sanity != METADATA_SANITY:
        raise UnsupportedFormat(
            f"Invalid metadata sanity {hex(sanity)}", table="header", offset=0
        )

    if version_override is not None:
        layout = get_layout(version_override)
        if layout is None:
            raise UnsupportedMetadataVersion(
                f"Unsupported metadata version override {version_override}",
                table="header",
            )
        if layout.major != version:
            logger.warning(
                f"Override metadata version {version} with {version_override}."
            )
    else:
        layout = _select_layout(data, version, logger)

    if layout.header_size > len(data):
        raise TruncatedMetadata(
            "Metadata header is truncated", table="header", offset=len(data)
        )

    tables = _read_tables(data, layout)

    for table, (offset, size) in tables.items():
        if offset + size > len(data):
            raise TruncatedMetadata(
                f"Table '{table}' exceeds the metadata blob ({len(data)} bytes)",
                table=table,
                offset=offset,
            )

        if size and offset < layout.header_size:
            raise MalformedMetadata(
                f"Table '{table}' overlaps the header", table=table, offset=offset
            )

        if not layout.is_blob(table) and size % layout.record_size(table):
            raise MalformedMetadata(
                f"Size of table '{table}' is not a multiple of its record size "
                f"{layout.record_size(table)}",
                table=table,
                offset=offset,
            )

    logger.debug(f"Metadata version {version}, layout {layout.version}.")

    return MetadataHeader(sanity=sanity, version=version, layout=layout, tables=tables)
