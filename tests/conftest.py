import pytest

from prismstream.hls.store import SegmentStore

from helpers import FakeFetcher


@pytest.fixture
def store(tmp_path) -> SegmentStore:
    return SegmentStore(tmp_path / "segments")


@pytest.fixture
def fetcher() -> FakeFetcher:
    f = FakeFetcher()
    yield f
    f.release.set()
