"""End-to-end tests against a real child process speaking LSP over stdio.

The child is a small pygls server standing in for sourcekit-lsp. It records
its argv and environment so the launch contract can be checked, answers
hover with null, and dies abruptly when asked for a definition.
"""

import asyncio
import json
import os
import stat
import sys
import textwrap

import pytest

from sourcekit_broker.errors import SessionTerminatedError
from sourcekit_broker.registry import SessionRegistry
from sourcekit_broker.session import TOOLCHAIN_ENV, SessionState

pytestmark = pytest.mark.skipif(os.name == "nt", reason="needs an executable script")

TIMEOUT = 30

FAKE_SERVER = textwrap.dedent(
    """\
    #!{python}
    import json
    import os
    import sys

    from lsprotocol import types as lsp
    from pygls.lsp.server import LanguageServer

    with open(__file__ + ".launch.json", "w") as record:
        json.dump(
            {{"argv": sys.argv[1:], "toolchain": os.environ.get("{toolchain_env}")}},
            record,
        )

    server = LanguageServer("fake-sourcekit-lsp", "0.0.1")


    @server.feature(lsp.TEXT_DOCUMENT_HOVER)
    def hover(params):
        return None


    @server.feature(lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL)
    def document_symbols(params):
        span = lsp.Range(
            start=lsp.Position(line=0, character=0),
            end=lsp.Position(line=0, character=14),
        )
        return [
            lsp.DocumentSymbol(
                name="main",
                kind=lsp.SymbolKind.Function,
                range=span,
                selection_range=span,
            )
        ]


    @server.feature(lsp.TEXT_DOCUMENT_DEFINITION)
    def definition(params):
        os._exit(3)


    server.start_io()
    """
)


@pytest.fixture
def fake_server(tmp_path):
    script = tmp_path / "fake-sourcekit-lsp"
    script.write_text(FAKE_SERVER.format(python=sys.executable, toolchain_env=TOOLCHAIN_ENV))
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script


@pytest.fixture
def server_context(fake_server):
    return {
        "serverPath": str(fake_server),
        "SDKPath": "/opt/sdk/MacOSX.sdk",
        "target": "arm64-apple-macosx13.0",
        "toolchain": "/opt/toolchains/swift.xctoolchain",
    }


@pytest.mark.asyncio
async def test_full_lifecycle(storage_root, fake_server, server_context):
    registry = SessionRegistry(storage_root=storage_root)
    session = registry.get_or_create("GRP", "https://github.com", "proj")

    result = await asyncio.wait_for(session.initialize(server_context), TIMEOUT)
    assert result.capabilities.hover_provider

    launch = json.loads((fake_server.parent / (fake_server.name + ".launch.json")).read_text())
    assert launch["argv"] == [
        "--log-level", "info",
        "-Xswiftc", "-sdk",
        "-Xswiftc", "/opt/sdk/MacOSX.sdk",
        "-Xswiftc", "-target",
        "-Xswiftc", "arm64-apple-macosx13.0",
    ]
    assert launch["toolchain"] == "/opt/toolchains/swift.xctoolchain"

    session.send_initialized_notification(server_context)
    session.open_document(server_context, "main.swift", "func main() {}\n")

    hover = await asyncio.wait_for(session.hover(server_context, "main.swift", 4, 10), TIMEOUT)
    assert hover is None

    symbols = await asyncio.wait_for(
        session.document_symbols(server_context, "main.swift"), TIMEOUT
    )
    assert [symbol.name for symbol in symbols] == ["main"]

    await asyncio.wait_for(session.shutdown(server_context), TIMEOUT)
    session.exit()
    await asyncio.wait_for(session.wait_closed(), TIMEOUT)
    assert session.state is SessionState.EXITED
    assert registry.remove("github.com", "proj") is session


@pytest.mark.asyncio
async def test_server_crash_fails_pending_request(storage_root, server_context):
    registry = SessionRegistry(storage_root=storage_root)
    session = registry.get_or_create("GRP", "github.com", "proj")
    await asyncio.wait_for(session.initialize(server_context), TIMEOUT)
    session.send_initialized_notification(server_context)

    with pytest.raises(SessionTerminatedError):
        await asyncio.wait_for(
            session.definition(server_context, "main.swift", 0, 5), TIMEOUT
        )

    await asyncio.wait_for(session.wait_closed(), TIMEOUT)
    assert session.state is SessionState.EXITED
    with pytest.raises(SessionTerminatedError):
        await asyncio.wait_for(session.hover(server_context, "main.swift", 0, 0), TIMEOUT)
    await registry.drain()


# Answers initialize, then ignores every message, the exit notification,
# SIGTERM and even the end of its input.
STUBBORN_SERVER = textwrap.dedent(
    """\
    import json
    import signal
    import sys
    import time

    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    stdin = sys.stdin.buffer
    stdout = sys.stdout.buffer


    def read_message():
        length = None
        while True:
            line = stdin.readline()
            if not line:
                return None
            line = line.strip()
            if not line:
                break
            name, _, value = line.partition(b":")
            if name.strip().lower() == b"content-length":
                length = int(value)
        return json.loads(stdin.read(length))


    while True:
        message = read_message()
        if message is None:
            break
        if message.get("method") == "initialize":
            body = json.dumps(
                {"jsonrpc": "2.0", "id": message["id"], "result": {"capabilities": {}}}
            ).encode()
            stdout.write(b"Content-Length: %d\\r\\n\\r\\n" % len(body) + body)
            stdout.flush()

    while True:
        time.sleep(60)
    """
)


@pytest.fixture
def stubborn_server(tmp_path):
    script = tmp_path / "stubborn-sourcekit-lsp"
    script.write_text(f"#!{sys.executable}\n" + STUBBORN_SERVER)
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return script


@pytest.mark.asyncio
async def test_exit_ends_unresponsive_server(storage_root, stubborn_server, server_context, monkeypatch):
    monkeypatch.setattr("sourcekit_broker.session.TERMINATE_GRACE", 0.5)
    server_context["serverPath"] = str(stubborn_server)
    registry = SessionRegistry(storage_root=storage_root)
    session = registry.get_or_create("GRP", "github.com", "proj")
    await asyncio.wait_for(session.initialize(server_context), TIMEOUT)
    session.send_initialized_notification(server_context)

    hover = asyncio.create_task(session.hover(server_context, "main.swift", 0, 0))
    await asyncio.sleep(0)
    assert session.pending_requests == 1

    session.exit()
    with pytest.raises(SessionTerminatedError):
        await asyncio.wait_for(hover, TIMEOUT)
    await asyncio.wait_for(session.wait_closed(), TIMEOUT)

    assert session.state is SessionState.EXITED
    assert session._client._server.returncode is not None
    await asyncio.wait_for(registry.drain(), TIMEOUT)
