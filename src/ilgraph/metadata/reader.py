import ctypes
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from ilgraph.const import DEFAULT_MAX_WORKERS
from ilgraph.exceptions import MalformedMetadata
from ilgraph.log import get_logger

from . import layouts
from .header import MetadataHeader, parse_header
from .layouts import MetadataLayout
from .strings import StringTable


@dataclass
class Metadata:
    """Raw tables of a metadata blob.

    Records are validated against the blob bounds and the string table, but
    indices between tables are not resolved yet.
    """

    data: bytes = field(repr=False)
    header: MetadataHeader
    strings: StringTable = field(repr=False)
    tables: Dict[str, Sequence[ctypes.Structure]] = field(repr=False)

    @property
    def layout(self) -> MetadataLayout:
        return self.header.layout

    @property
    def version(self) -> float:
        return self.header.layout_version

    def table(self, name: str) -> Sequence[ctypes.Structure]:
        return self.tables.get(name, ())

    def blob(self, name: str) -> memoryview:
        offset, size = self.header.tables.get(name, (0, 0))
        return memoryview(self.data)[offset : offset + size]

    def get_string(self, offset: int) -> str:
        return self.strings.get(offset)


class MetadataReader:
    """Parse a metadata blob into typed record tables.

    Tables have no dependency on each other at this stage, so they are
    parsed on a bounded worker pool and joined before `read` returns.

    Args:
        data: Raw bytes of the metadata blob.
        version_override: Use this layout version instead of detecting it.
        max_workers: Size of the worker pool.
        logger: The logger to print log.
    """

    def __init__(
        self,
        data: bytes,
        version_override: Optional[float] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        logger: Optional[logging.Logger] = None,
    ):
        self.data = data
        self.version_override = version_override
        self.max_workers = max_workers
        self.logger = logger or get_logger(__name__)

    def _check_strings(
        self,
        table: str,
        records: Sequence[ctypes.Structure],
        strings: StringTable,
    ):
        names = layouts.STRING_FIELDS.get(table, ())
        if not names:
            return

        for index, record in enumerate(records):
            for name in names:
                value = getattr(record, name)

                if not strings.contains(value):
                    raise MalformedMetadata(
                        f"Field '{name}' references an invalid string",
                        table=table,
                        index=index,
                        offset=value,
                    )

    def _check_string_literals(
        self, records: Sequence[ctypes.Structure], header: MetadataHeader
    ):
        data_size = header.size(layouts.STRING_LITERAL_DATA)

        for index, record in enumerate(records):
            if record.data_index < 0 or record.data_index + record.length > data_size:
                raise MalformedMetadata(
                    "String literal exceeds the literal data table",
                    table=layouts.STRING_LITERALS,
                    index=index,
                    offset=record.data_index,
                )

    def _parse_table(
        self, table: str, header: MetadataHeader, strings: StringTable
    ) -> Sequence[ctypes.Structure]:
        record_class = header.layout.records[table]
        count = header.count(table)

        if not count:
            return ()

        records = (record_class * count).from_buffer_copy(
            self.data[header.offset(table) : header.offset(table) + header.size(table)]
        )

        self._check_strings(table, records, strings)

        if table == layouts.STRING_LITERALS:
            self._check_string_literals(records, header)

        self.logger.debug(f"Parsed {count} records of table '{table}'.")

        return records

    def read(self) -> Metadata:
        header = parse_header(self.data, self.version_override, logger=self.logger)

        strings = StringTable(
            self.data, header.offset(layouts.STRINGS), header.size(layouts.STRINGS)
        )

        record_tables = [
            table for table in header.layout.header_tables if not header.layout.is_blob(table)
        ]

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="ilgraph-table"
        ) as executor:
            futures = {
                table: executor.submit(self._parse_table, table, header, strings)
                for table in record_tables
            }

        # Every task has finished here, errors surface in header order.
        tables = {table: future.result() for table, future in futures.items()}

        self.logger.info(
            f"Read metadata version {header.layout_version}: "
            f"{len(tables[layouts.TYPE_DEFINITIONS])} types, "
            f"{len(tables[layouts.METHODS])} methods."
        )

        return Metadata(data=self.data, header=header, strings=strings, tables=tables)
