import logging
from typing import Optional, Union

from .const import DEFAULT_MAX_WORKERS, SUPPORTED_VERSIONS
from .exceptions import InvalidOption, UnsupportedMetadataVersion
from .utils import parse_hex_address

AddressOption = Optional[Union[int, str]]


def parse_version_tag(value: Union[int, float, str]) -> float:
    """Parse a metadata version tag such as `24`, `24.2` or `"29"`."""
    if isinstance(value, bool):
        raise InvalidOption(f"Invalid metadata version: {value!r}")

    if isinstance(value, str):
        try:
            version = float(value.strip())
        except ValueError:
            raise InvalidOption(f"Invalid metadata version: {value!r}") from None

    elif isinstance(value, (int, float)):
        version = float(value)

    else:
        raise InvalidOption(f"Invalid metadata version: {value!r}")

    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedMetadataVersion(
            f"Unsupported metadata version {value}, "
            f"supported: {', '.join(str(v) for v in SUPPORTED_VERSIONS)}"
        )

    return version


class ResolverOptions:
    """Options of an analysis session.

    Values are validated on construction.

    Args:
        version_override: Use this metadata layout version instead of the
            detected one.
        dump_base: Treat the image as a memory dump taken at this address.
        code_registration: Address of the code registration.
        metadata_registration: Address of the metadata registration.
        symbol_search: Look up exported registration symbols.
        max_workers: Size of the worker pools.
        logger: The logger to print log.
    """

    def __init__(
        self,
        version_override: Optional[Union[int, float, str]] = None,
        dump_base: AddressOption = None,
        code_registration: AddressOption = None,
        metadata_registration: AddressOption = None,
        symbol_search: bool = True,
        max_workers: int = DEFAULT_MAX_WORKERS,
        logger: Optional[logging.Logger] = None,
    ):
        self.version_override = (
            parse_version_tag(version_override) if version_override is not None else None
        )

        self.dump_base = self._parse_address(dump_base)
        self.code_registration = self._parse_address(code_registration)
        self.metadata_registration = self._parse_address(metadata_registration)

        if not isinstance(symbol_search, bool):
            raise InvalidOption(f"Invalid symbol_search: {symbol_search!r}")

        if (
            isinstance(max_workers, bool)
            or not isinstance(max_workers, int)
            or max_workers < 1
        ):
            raise InvalidOption(f"Invalid max_workers: {max_workers!r}")

        self.symbol_search = symbol_search
        self.max_workers = max_workers
        self.logger = logger

    @staticmethod
    def _parse_address(value: AddressOption) -> Optional[int]:
        if value is None:
            return None
        return parse_hex_address(value)

    def __repr__(self) -> str:
        def fmt(value: Optional[int]) -> str:
            return "None" if value is None else hex(value)

        return (
            f"ResolverOptions(version_override={self.version_override}, "
            f"dump_base={fmt(self.dump_base)}, "
            f"code_registration={fmt(self.code_registration)}, "
            f"metadata_registration={fmt(self.metadata_registration)}, "
            f"symbol_search={self.symbol_search}, max_workers={self.max_workers})"
        )
