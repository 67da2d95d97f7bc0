"""Shared fixtures for session broker tests."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from lsprotocol import types as lsp

SERVER_PATH = "/usr/bin/sourcekit-lsp"
SDK_PATH = "/Applications/Xcode.app/Contents/Developer/Platforms/iPhoneOS.platform/Developer/SDKs/iPhoneOS.sdk"
TARGET = "arm64-apple-ios15.0"


def make_fake_process():
    """Build a stand-in for the spawned asyncio subprocess."""
    process = MagicMock()
    process.pid = 4242
    process.returncode = None
    process.wait = AsyncMock(return_value=0)
    return process


def make_fake_client(on_exit):
    """Build a stand-in for the pygls client that never spawns anything."""
    client = MagicMock()
    client.stopped = False
    client.on_exit = on_exit
    client.process = make_fake_process()
    client._server = None

    async def start_io(*args, **kwargs):
        client._server = client.process

    client.start_io = AsyncMock(side_effect=start_io)
    client.stop = AsyncMock()
    client.initialize_async = AsyncMock(
        return_value=lsp.InitializeResult(
            capabilities=lsp.ServerCapabilities(hover_provider=True),
            server_info=lsp.ServerInfo(name="sourcekit-lsp"),
        )
    )
    client.shutdown_async = AsyncMock(return_value=None)
    client.text_document_hover_async = AsyncMock(return_value=None)
    client.text_document_definition_async = AsyncMock(return_value=None)
    client.text_document_document_symbol_async = AsyncMock(return_value=None)
    return client


class FakeClients:
    """Client factory that remembers every client it built."""

    def __init__(self):
        self.built = []

    def __call__(self, on_exit):
        client = make_fake_client(on_exit)
        self.built.append(client)
        return client

    @property
    def last(self):
        return self.built[-1]


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "storage"
    root.mkdir()
    return root


@pytest.fixture
def context():
    return {"serverPath": SERVER_PATH, "SDKPath": SDK_PATH, "target": TARGET}


@pytest.fixture
def fake_clients():
    return FakeClients()
