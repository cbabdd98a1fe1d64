import io
import sys
import tarfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from dpiwarden.core.models import HttpSettings  # noqa: E402
from dpiwarden.core.paths import AppPaths  # noqa: E402
from dpiwarden.engine.platform import HostPlatform  # noqa: E402
from dpiwarden.net.fetch import Fetcher  # noqa: E402
from dpiwarden.storage.registry import ResourceRegistry  # noqa: E402

Body = Union[str, bytes]


class FakeRemote:
    """
    Scripted HTTP remote for httpx.MockTransport.
    Unknown URLs get the fallback response, or 404 without one.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, Tuple[int, bytes, Dict[str, str]]] = {}
        self.requests: List[str] = []
        self.fallback: Optional[Callable[[str], Optional[Body]]] = None

    def add(self, url: str, body: Body = b"", status: int = 200, headers: Optional[Dict[str, str]] = None) -> None:
        self.routes[url] = (status, body.encode("utf-8") if isinstance(body, str) else body, headers or {})

    def count(self, url: str) -> int:
        return self.requests.count(url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)

        if url in self.routes:
            status, body, headers = self.routes[url]
            return httpx.Response(status, content=body, headers=headers)

        if self.fallback is not None:
            body = self.fallback(url)
            if body is not None:
                return httpx.Response(200, content=body)

        return httpx.Response(404, content=b"Not Found")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_tarball(files: Dict[str, bytes]) -> bytes:
    """Build an in-memory .tar.gz from {member name: bytes}."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def root_dir(tmp_path):
    """
    Returns a temporary directory to act as the appdata directory for tests.
    """
    return tmp_path / "appdata"


@pytest.fixture
def paths(root_dir):
    return AppPaths.at(root_dir)


@pytest.fixture
def linux_host():
    return HostPlatform(system="linux", arch="x86_64")


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def http_settings():
    return HttpSettings(retries=3, retry_backoff_seconds=0)


@pytest.fixture
def fetcher(remote, http_settings):
    return Fetcher(http_settings, transport=remote.transport)


@pytest.fixture
def registry(paths, fetcher):
    return ResourceRegistry(paths, fetcher)
