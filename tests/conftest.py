import pytest

from ilgraph import ResolutionEngine, ResolverOptions
from ilgraph.graph import TypeGraphBuilder
from ilgraph.metadata import MetadataReader

from .utils import build_sample_image, build_sample_metadata


@pytest.fixture(scope="module")
def sample():
    yield build_sample_metadata()


@pytest.fixture(scope="module")
def sample_indices(sample):
    yield sample[1]


@pytest.fixture(scope="module")
def metadata(sample):
    yield MetadataReader(sample[0]).read()


@pytest.fixture(scope="module")
def graph(metadata):
    yield TypeGraphBuilder(metadata).build()


@pytest.fixture()
def session(sample):
    image, code_registration, metadata_registration = build_sample_image()

    engine = ResolutionEngine(
        ResolverOptions(
            code_registration=code_registration,
            metadata_registration=metadata_registration,
            symbol_search=False,
        )
    )
    yield engine.open(image, sample[0])
