from typing import Optional


class IlgraphException(Exception):
    """Base class for all exceptions.

    Args:
        message: Description of the failure.
        table: Name of the table or structure being processed.
        index: Record index inside the table.
        offset: Byte offset or virtual address related to the failure.
    """

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        index: Optional[int] = None,
        offset: Optional[int] = None,
    ):
        super().__init__(message)

        self.message = message
        self.table = table
        self.index = index
        self.offset = offset

    def __str__(self) -> str:
        context = []

        if self.table is not None:
            context.append(f"table={self.table}")
        if self.index is not None:
            context.append(f"index={self.index}")
        if self.offset is not None:
            context.append(f"offset={hex(self.offset)}")

        if not context:
            return self.message

        return f"{self.message} ({', '.join(context)})"


class StructuralError(IlgraphException):
    """The image or metadata bytes cannot be parsed."""


class UnsupportedFormat(StructuralError):
    """No known magic value matched."""


class TruncatedImage(StructuralError):
    """A structure declared by the image lies past the end of the buffer."""


class TruncatedMetadata(StructuralError):
    """A table declared by the metadata header lies past the end of the blob."""


class MalformedLayout(StructuralError):
    """Segments of the image overlap or are not ordered."""


class MalformedMetadata(StructuralError):
    """Records of a metadata table are inconsistent with their declaration."""


class UnsupportedMetadataVersion(StructuralError):
    """The metadata version is outside the supported set."""


class GraphError(IlgraphException):
    """The metadata tables do not form a consistent type graph."""


class DanglingTypeReference(GraphError):
    """A reference points outside of its target table."""


class CyclicTypeNesting(GraphError):
    """A containment or inheritance chain does not terminate."""


class ResolutionError(IlgraphException):
    """An address could not be resolved.

    These are collected into the resolution report and never abort a session.
    """


class AddressOutOfBounds(ResolutionError):
    """An address lies outside the expected segment."""


class AddressResolutionAmbiguous(ResolutionError):
    """Positional alignment of a module failed."""


class RegistrationNotFound(ResolutionError):
    """A runtime registration structure could not be located."""


class InvalidOption(IlgraphException, ValueError):
    """An option value is malformed."""
