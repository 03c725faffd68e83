"""Test helpers for code that downloads through the shared HTTP client."""

from __future__ import annotations

import io
import tarfile
import zipfile
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import httpx

from .net import configure_http_client, reset_http_client

__all__ = ["use_mock_http_client", "build_tar_gz", "build_zip"]


@contextmanager
def use_mock_http_client(transport: httpx.BaseTransport, **client_kwargs) -> Iterator[httpx.Client]:
    """Temporarily install an HTTPX client backed by ``transport``."""

    client_kwargs.setdefault("follow_redirects", True)
    client = httpx.Client(transport=transport, **client_kwargs)
    configure_http_client(client=client)
    try:
        yield client
    finally:
        reset_http_client()
        client.close()


def build_tar_gz(
    files: Dict[str, bytes],
    *,
    directories: Optional[list] = None,
    compress: bool = True,
) -> bytes:
    """Build an in-memory tarball holding ``files`` (name -> content)."""

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz" if compress else "w") as archive:
        for directory in directories or []:
            info = tarfile.TarInfo(directory)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            archive.addfile(info)
        for name, payload in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def build_zip(files: Dict[str, bytes], *, directories: Optional[list] = None) -> bytes:
    """Build an in-memory zip archive holding ``files`` (name -> content)."""

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for directory in directories or []:
            archive.writestr(directory.rstrip("/") + "/", b"")
        for name, payload in files.items():
            archive.writestr(name, payload)
    return buffer.getvalue()
