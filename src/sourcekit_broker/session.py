"""
Per-workspace session with a sourcekit-lsp child process.

A Session owns one language server process and the stdio transport pygls
builds on top of it. It drives the initialize/shutdown/exit lifecycle,
forwards document queries, and tracks every outstanding request so that
each one is answered exactly once, by the server or by the session
noticing that the server has gone away.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from lsprotocol import types as lsp
from pygls.exceptions import JsonRpcException
from pygls.lsp.client import LanguageClient

from sourcekit_broker import __version__
from sourcekit_broker.errors import (
    ConfigurationError,
    ProtocolError,
    RequestTimeoutError,
    ServerLaunchError,
    SessionNotStartedError,
    SessionTerminatedError,
)
from sourcekit_broker.workspace import (
    WorkspaceKey,
    classify_language,
    document_root,
    resolve_document,
    workspace_key,
)

logger = logging.getLogger(__name__)

TOOLCHAIN_ENV = "SOURCEKIT_TOOLCHAIN_PATH"
REQUIRED_CONTEXT_KEYS = ("serverPath", "SDKPath", "target")

# didOpen always starts a document at this version
INITIAL_DOCUMENT_VERSION = 1

# seconds a terminated server gets before it is killed
TERMINATE_GRACE = 5.0


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SHUTTING_DOWN = "shutting-down"
    EXITED = "exited"


@dataclass(frozen=True)
class LaunchContext:
    """Launch settings taken from a request context mapping."""

    server_path: str
    sdk_path: str
    target: str
    toolchain: str | None = None

    @classmethod
    def from_mapping(cls, context: Mapping[str, str]) -> "LaunchContext":
        """Validate a context mapping.

        Raises:
            ConfigurationError: One or more of serverPath, SDKPath, target
                is absent or empty.
        """
        missing = [key for key in REQUIRED_CONTEXT_KEYS if not context.get(key)]
        if missing:
            raise ConfigurationError(missing)
        return cls(
            server_path=context["serverPath"],
            sdk_path=context["SDKPath"],
            target=context["target"],
            toolchain=context.get("toolchain") or None,
        )

    def arguments(self) -> list[str]:
        """Server arguments; compiler flags go through -Xswiftc passthrough."""
        args = ["--log-level", "info"]
        for flag in ("-sdk", self.sdk_path, "-target", self.target):
            args.extend(["-Xswiftc", flag])
        return args

    def environment(self) -> dict[str, str] | None:
        """Child environment, or None to inherit ours unchanged."""
        if self.toolchain is None:
            return None
        env = os.environ.copy()
        env[TOOLCHAIN_ENV] = self.toolchain
        return env


class BrokerClient(LanguageClient):
    """pygls client that reports the death of its server process."""

    def __init__(self, on_exit: Callable[[], None]) -> None:
        super().__init__("sourcekit-broker", __version__)
        self._on_exit = on_exit

    async def server_exit(self, server: asyncio.subprocess.Process) -> None:
        logger.info(
            f"language server pid {server.pid} exited with code {server.returncode}"
        )
        self._on_exit()


class Session:
    """One language server process serving a single workspace.

    All methods must be called from the event loop that ran ``initialize``;
    that loop serializes every write to the server.
    """

    def __init__(
        self,
        install_group: str,
        resource: str,
        slug: str,
        storage_root: str | os.PathLike[str] | None = None,
        request_timeout: float | None = None,
        client_factory: Callable[[Callable[[], None]], LanguageClient] | None = None,
    ) -> None:
        """Create an uninitialized session; nothing is launched yet.

        Args:
            install_group: Install group identifier selecting the storage container.
            resource: Hosting resource, e.g. ``github.com``.
            slug: Project slug under the resource.
            storage_root: Storage base overriding the environment.
            request_timeout: Seconds to wait for each response; None waits forever.
            client_factory: Builds the protocol client, given the exit callback.
        """
        self.install_group = install_group
        self.resource = resource
        self.slug = slug
        self.key: WorkspaceKey = workspace_key(resource, slug)
        self._storage_root = storage_root
        self._request_timeout = request_timeout
        self._client_factory = client_factory or BrokerClient
        self._client: LanguageClient | None = None
        self._state = SessionState.UNINITIALIZED
        self._launched: asyncio.Event | None = None
        self._closed: asyncio.Event | None = None
        self._stop_task: asyncio.Future[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._request_ids = itertools.count(1)

    def __repr__(self) -> str:
        return f"<Session {self.key} {self._state.value}>"

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    @property
    def document_root(self) -> Path:
        return document_root(
            self.install_group, self.resource, self.slug, self._storage_root
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, context: Mapping[str, str]) -> lsp.InitializeResult:
        """Launch the server on first call and send ``initialize``.

        Later calls return empty capabilities without touching the server.

        Raises:
            ConfigurationError: Required launch keys are missing.
            ServerLaunchError: The server executable could not be started.
            SessionTerminatedError: The session has been shut down or has exited.
            ProtocolError: The server rejected the initialize request.
        """
        if self._state is SessionState.INITIALIZED:
            return lsp.InitializeResult(capabilities=lsp.ServerCapabilities())
        if self._state is not SessionState.UNINITIALIZED:
            raise SessionTerminatedError(f"{self.key}: session is {self._state.value}")

        launch = LaunchContext.from_mapping(context)
        logger.debug(
            f"[initialize] server: {launch.server_path}, SDK: {launch.sdk_path}, "
            f"target: {launch.target}"
        )
        root = self.document_root

        self._client = self._create_client()
        self._launched = asyncio.Event()
        self._closed = asyncio.Event()
        # No await before this point: concurrent callers see INITIALIZED
        # and take the early return above.
        self._state = SessionState.INITIALIZED

        args = launch.arguments()
        logger.info(f"[{self.key}] launching language server: {launch.server_path} {' '.join(args)}")
        try:
            await self._client.start_io(
                launch.server_path, *args, env=launch.environment()
            )
        except (OSError, RuntimeError) as e:
            logger.error(f"[{self.key}] failed to start {launch.server_path}: {e}")
            self._close_transport(f"server could not be started: {e}")
            raise ServerLaunchError(f"cannot start {launch.server_path}: {e}") from e
        finally:
            self._launched.set()

        if self._stop_task is not None:
            # exit() arrived while the process was being spawned
            await self._stop_server()
            self._close_transport("exit requested during launch")
            raise SessionTerminatedError(f"{self.key}: exited during launch")

        root_uri = root.as_uri()
        params = lsp.InitializeParams(
            process_id=os.getpid(),
            root_uri=root_uri,
            capabilities=lsp.ClientCapabilities(),
            workspace_folders=[lsp.WorkspaceFolder(uri=root_uri, name=root.name)],
        )
        client = await self._transport()
        result = await self._track(
            lsp.INITIALIZE, lambda: client.initialize_async(params)
        )
        server_info = getattr(result, "server_info", None)
        logger.info(f"[{self.key}] language server initialized: {server_info}")
        return result

    def send_initialized_notification(self, context: Mapping[str, str]) -> None:
        client = self._notification_transport()
        client.initialized(lsp.InitializedParams())

    async def shutdown(self, context: Mapping[str, str]) -> None:
        """Ask the server to shut down; a never-started session succeeds at once."""
        if self._state is SessionState.UNINITIALIZED:
            return None
        if self._state is SessionState.EXITED:
            raise SessionTerminatedError(f"{self.key}: server has already exited")

        self._state = SessionState.SHUTTING_DOWN
        client = await self._transport()
        await self._track(lsp.SHUTDOWN, lambda: client.shutdown_async(None))
        return None

    def exit(self) -> None:
        """Send ``exit`` and terminate the server without waiting for it.

        The transport closes once the process is observed to have stopped;
        use :meth:`wait_closed` to wait for that.
        """
        if self._client is None:
            logger.debug(f"[{self.key}] exit ignored: server was never started")
            return
        if self._state is SessionState.EXITED or self._stop_task is not None:
            return

        if self._launched is not None and self._launched.is_set():
            self._client.exit(None)
        logger.info(f"[{self.key}] terminating language server")
        self._stop_task = asyncio.ensure_future(self._stop_server())
        self._stop_task.add_done_callback(self._on_stopped)

    async def wait_closed(self) -> None:
        """Wait until the server process is gone and the transport closed."""
        if self._closed is None:
            return
        await self._closed.wait()
        if self._stop_task is not None:
            await asyncio.wait([self._stop_task])

    # ------------------------------------------------------------------
    # Documents and queries
    # ------------------------------------------------------------------

    def open_document(self, context: Mapping[str, str], document: str, text: str) -> None:
        """Send ``textDocument/didOpen`` with the document's full text."""
        client = self._notification_transport()
        identifier = resolve_document(self.document_root, document)
        language = classify_language(identifier)
        logger.debug(f"[didOpen] document {document} ({language.value})")

        client.text_document_did_open(
            lsp.DidOpenTextDocumentParams(
                text_document=lsp.TextDocumentItem(
                    uri=identifier.as_uri(),
                    language_id=language.value,
                    version=INITIAL_DOCUMENT_VERSION,
                    text=text,
                )
            )
        )

    async def document_symbols(
        self, context: Mapping[str, str], document: str
    ) -> list[lsp.DocumentSymbol | lsp.SymbolInformation]:
        client = await self._transport()
        params = lsp.DocumentSymbolParams(text_document=self._identifier(document))
        result = await self._track(
            lsp.TEXT_DOCUMENT_DOCUMENT_SYMBOL,
            lambda: client.text_document_document_symbol_async(params),
        )
        if result is None:
            return []
        return list(result)

    async def hover(
        self, context: Mapping[str, str], document: str, line: int, character: int
    ) -> lsp.Hover | None:
        """Hover information at a zero-based line and UTF-16 character offset.

        Returns None when the server has nothing to show.
        """
        client = await self._transport()
        params = lsp.HoverParams(
            text_document=self._identifier(document),
            position=lsp.Position(line=line, character=character),
        )
        return await self._track(
            lsp.TEXT_DOCUMENT_HOVER, lambda: client.text_document_hover_async(params)
        )

    async def definition(
        self, context: Mapping[str, str], document: str, line: int, character: int
    ) -> list[lsp.Location]:
        """Definition locations at a zero-based line and UTF-16 character offset."""
        client = await self._transport()
        params = lsp.DefinitionParams(
            text_document=self._identifier(document),
            position=lsp.Position(line=line, character=character),
        )
        result = await self._track(
            lsp.TEXT_DOCUMENT_DEFINITION,
            lambda: client.text_document_definition_async(params),
        )
        return _normalize_locations(result)

    # ------------------------------------------------------------------
    # Transport plumbing
    # ------------------------------------------------------------------

    def _create_client(self) -> LanguageClient:
        client = self._client_factory(self._on_server_exit)

        @client.feature(lsp.WINDOW_LOG_MESSAGE)
        def on_log_message(params: lsp.LogMessageParams) -> None:
            self._handle_log_message(params)

        @client.feature(lsp.WINDOW_SHOW_MESSAGE)
        def on_show_message(params: lsp.ShowMessageParams) -> None:
            self._handle_log_message(params)

        @client.feature(lsp.TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS)
        def on_publish_diagnostics(params: lsp.PublishDiagnosticsParams) -> None:
            logger.debug(
                f"[{self.key}] {len(params.diagnostics)} diagnostics for {params.uri}"
            )

        return client

    def _identifier(self, document: str) -> lsp.TextDocumentIdentifier:
        uri = resolve_document(self.document_root, document).as_uri()
        return lsp.TextDocumentIdentifier(uri=uri)

    async def _transport(self) -> LanguageClient:
        """Return the client once launched, failing fast if there is none."""
        if self._client is None or self._launched is None:
            raise SessionNotStartedError(f"{self.key}: session is not initialized")
        if not self._launched.is_set():
            await self._launched.wait()
        if self._state is SessionState.EXITED or self._client.stopped:
            raise SessionTerminatedError(f"{self.key}: server has exited")
        return self._client

    def _notification_transport(self) -> LanguageClient:
        if self._client is None or self._launched is None:
            raise SessionNotStartedError(f"{self.key}: session is not initialized")
        if self._state is SessionState.EXITED or self._client.stopped:
            raise SessionTerminatedError(f"{self.key}: server has exited")
        if not self._launched.is_set():
            raise SessionNotStartedError(f"{self.key}: server is still launching")
        return self._client

    async def _track(self, method: str, send: Callable[[], Awaitable[Any]]) -> Any:
        """Send a request and wait for the entry in the pending table to settle."""
        request_id = next(self._request_ids)
        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = waiter
        logger.debug(f"[{self.key}] -> {method} #{request_id}")

        call = asyncio.ensure_future(send())
        call.add_done_callback(functools.partial(self._settle, method, request_id))
        try:
            if self._request_timeout is None:
                return await waiter
            return await asyncio.wait_for(waiter, self._request_timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(
                f"{method} #{request_id} got no response within {self._request_timeout}s"
            ) from e
        finally:
            self._pending.pop(request_id, None)
            if not call.done():
                call.cancel()

    def _settle(self, method: str, request_id: int, call: asyncio.Future[Any]) -> None:
        waiter = self._pending.get(request_id)
        if call.cancelled():
            if waiter is not None and not waiter.done():
                waiter.set_exception(
                    SessionTerminatedError(f"{method} #{request_id} was abandoned")
                )
            return

        exc = call.exception()
        if waiter is None or waiter.done():
            if exc is not None:
                logger.debug(f"[{self.key}] late failure for {method} #{request_id}: {exc}")
            return

        logger.debug(f"[{self.key}] <- {method} #{request_id}")
        if exc is None:
            waiter.set_result(call.result())
        elif isinstance(exc, JsonRpcException):
            waiter.set_exception(
                ProtocolError(
                    getattr(exc, "code", None),
                    getattr(exc, "message", None) or str(exc),
                    getattr(exc, "data", None),
                )
            )
        else:
            waiter.set_exception(exc)

    def _on_server_exit(self) -> None:
        self._close_transport("server process exited")
        if self._stop_task is None and self._client is not None:
            # reap the reader tasks pygls leaves behind
            self._stop_task = asyncio.ensure_future(self._stop_server())
            self._stop_task.add_done_callback(self._on_stopped)

    def _process(self) -> asyncio.subprocess.Process | None:
        # pygls keeps the spawned process on the client once start_io returns
        return getattr(self._client, "_server", None)

    def _terminate(self) -> bool:
        """Send SIGTERM to a running server; False if there is none."""
        process = self._process()
        if process is None or process.returncode is not None:
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        return True

    async def _stop_server(self) -> None:
        """Terminate the process, kill it after a grace period, then reap the client."""
        process = self._process()
        if self._terminate():
            try:
                await asyncio.wait_for(process.wait(), TERMINATE_GRACE)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[{self.key}] language server pid {process.pid} ignored SIGTERM, killing it"
                )
                process.kill()
        await self._client.stop()

    def _on_stopped(self, task: asyncio.Future[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[{self.key}] error while stopping server: {task.exception()}")
        self._close_transport("server was terminated")

    def _close_transport(self, reason: str) -> None:
        """Move to EXITED and fail everything still waiting for a response."""
        if self._state is SessionState.EXITED:
            return
        self._state = SessionState.EXITED

        waiting = [w for w in self._pending.values() if not w.done()]
        if waiting:
            logger.warning(
                f"[{self.key}] failing {len(waiting)} pending request(s): {reason}"
            )
        for waiter in waiting:
            waiter.set_exception(SessionTerminatedError(f"{self.key}: {reason}"))

        if self._launched is not None:
            self._launched.set()
        if self._closed is not None:
            self._closed.set()
        logger.info(f"[{self.key}] transport closed: {reason}")

    def _handle_log_message(
        self, params: lsp.LogMessageParams | lsp.ShowMessageParams
    ) -> None:
        """Forward window/logMessage and window/showMessage to our logger."""
        level_map = {
            lsp.MessageType.Error: logging.ERROR,
            lsp.MessageType.Warning: logging.WARNING,
            lsp.MessageType.Info: logging.INFO,
            lsp.MessageType.Log: logging.DEBUG,
        }
        level = level_map.get(params.type, logging.DEBUG)
        logger.log(level, f"[{self.key}] [server] {params.message}")


def _normalize_locations(result: Any) -> list[lsp.Location]:
    """Normalize a definition result to a list of Locations."""
    if result is None:
        return []

    locations: list[lsp.Location] = []
    items = result if isinstance(result, list) else [result]
    for item in items:
        if isinstance(item, lsp.Location):
            locations.append(item)
        elif isinstance(item, lsp.LocationLink):
            locations.append(
                lsp.Location(uri=item.target_uri, range=item.target_range)
            )
    return locations
