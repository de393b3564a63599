import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

from .errors import SpawnError

MessageHandler = Callable[[Any], Awaitable[None] | None]

CONNECTION_MODES = ("pipe", "socket")


def encode_message(message: dict[str, Any]) -> bytes:
    body = json.dumps(message, ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


async def read_message(reader: asyncio.StreamReader) -> Any:
    """Read one framed message.

    Returns the decoded JSON value, the raw body as ``bytes`` when it is not
    valid JSON, or None at end of stream.
    """
    headers = {}
    while True:
        header_line = await reader.readline()
        if not header_line:
            return None
        if header_line in (b"\r\n", b"\n"):
            break
        key, _, value = header_line.decode("ascii").partition(":")
        headers[key.strip().lower()] = value.strip()

    if "content-length" not in headers:
        return None

    body = await reader.readexactly(int(headers["content-length"]))
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return body


class LSPTransport:
    """Duplex JSON-RPC channel to a language server.

    ``pipe`` mode spawns the server and talks over its stdin/stdout, ``socket``
    mode connects to a server already listening on ``host:port``. Inbound
    messages are handed, in arrival order, to the single handler registered
    with ``on_message``.
    """

    def __init__(
        self, commands: list[str], mode="pipe", host="127.0.0.1", port=2087, exit_grace=0.5
    ):
        if mode not in CONNECTION_MODES:
            raise ValueError(
                f"Invalid connection mode {mode!r}. Use one of {CONNECTION_MODES}"
            )
        self.commands = commands
        self.mode = mode
        self.host = host
        self.port = port
        self.exit_grace = exit_grace
        self.logger = logging.getLogger(__name__)

        self.process: asyncio.subprocess.Process | None = None
        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None

        self.message_queue: asyncio.Queue[Any] = asyncio.Queue()
        self._handler: MessageHandler | None = None
        self._close_callbacks: list[Callable[[], None]] = []

        self._tasks: set[asyncio.Task] = set()
        self._reader_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._started = False
        self._stopping = False

    @property
    def is_open(self) -> bool:
        return self._started and not self._stopping

    def on_message(self, handler: MessageHandler):
        if self._handler is not None:
            raise RuntimeError("An inbound message handler is already registered")
        self._handler = handler

    def on_close(self, callback: Callable[[], None]):
        self._close_callbacks.append(callback)

    async def start(self):
        if self._started:
            raise RuntimeError("LSPTransport already started")

        if self.mode == "pipe":
            self.logger.info(f"Starting LSP server via stdio: {self.commands}")
            try:
                self.process = await asyncio.create_subprocess_exec(
                    *self.commands,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (OSError, ValueError) as e:
                raise SpawnError(
                    f"Cannot start LSP server {self.commands}: {e}"
                ) from e
            self.reader = self.process.stdout
            self.writer = self.process.stdin
            self.logger.info(f"LSP server started with PID {self.process.pid}")
        else:
            self.logger.info(
                f"Connecting to LSP server via socket: {self.host}:{self.port}"
            )
            try:
                self.reader, self.writer = await asyncio.open_connection(
                    self.host, self.port
                )
            except OSError as e:
                raise SpawnError(
                    f"Cannot connect to LSP server at {self.host}:{self.port}: {e}"
                ) from e
            self.logger.info("Connected to LSP server via socket")

        self._started = True
        self._reader_task = self._spawn(self._read_messages())
        self._spawn(self._process_messages())
        if self.process:
            self._spawn(self._read_stderr())
            self._spawn(self._monitor_process())

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self):
        """Close the channel and reap the server; safe to call more than once.

        The work runs in its own task, so a caller that is cancelled midway
        leaves it running and the next ``stop()`` waits for the same task.
        """
        await asyncio.shield(self._request_stop())

    async def _stop(self):
        self.logger.info("Stopping LSPTransport")
        try:
            tasks = list(self._tasks)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            if self.writer and not self.writer.is_closing():
                try:
                    self.writer.close()
                    await self.writer.wait_closed()
                except (BrokenPipeError, ConnectionResetError):
                    pass

            if self.process and self.process.returncode is None:
                try:
                    # A server that saw `exit` or stdin EOF usually quits by itself.
                    await asyncio.wait_for(self.process.wait(), timeout=self.exit_grace)
                except asyncio.TimeoutError:
                    await self._terminate()
        finally:
            for callback in self._close_callbacks:
                try:
                    callback()
                except Exception as e:
                    self.logger.error(f"Error in close callback: {e}")

        self.logger.info("LSPTransport stopped")

    async def _terminate(self):
        self.logger.info("Terminating LSP server process")
        try:
            self.process.terminate()
            await asyncio.wait_for(self.process.wait(), timeout=2.0)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            self.logger.warning("Process did not terminate gracefully, killing")
            self.process.kill()
            await self.process.wait()

    def _request_stop(self) -> asyncio.Task:
        if self._stop_task is None:
            self._stopping = True
            self._stop_task = asyncio.create_task(self._stop())
        return self._stop_task

    async def _monitor_process(self):
        if not self.process:
            return
        return_code = await self.process.wait()
        self.logger.info(f"LSP server process exited with code {return_code}")
        if self._reader_task and not self._stopping:
            # stdout may still hold messages written just before exit.
            await asyncio.wait({self._reader_task}, timeout=1.0)
        self._request_stop()

    async def _read_stderr(self):
        if not self.process or not self.process.stderr:
            return
        try:
            while not self.process.stderr.at_eof():
                line = await self.process.stderr.readline()
                if not line:
                    break
                self.logger.error(f"LSP Server STDERR: {line.decode().strip()}")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self.logger.error(f"Error reading stderr: {e}")

    async def _read_messages(self):
        try:
            while self.reader and not self.reader.at_eof():
                message = await read_message(self.reader)
                if message is None:
                    break
                await self.message_queue.put(message)
        except (
            asyncio.IncompleteReadError,
            ConnectionResetError,
            BrokenPipeError,
        ):
            self.logger.info("Connection to LSP server lost")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            if not self._stopping:
                self.logger.error(f"Unexpected error in message reader: {e}")
        finally:
            if not self._stopping:
                # Let the consumer drain what was already read before closing.
                await self.message_queue.join()
                self._request_stop()

    async def _process_messages(self):
        try:
            while True:
                message = await self.message_queue.get()
                try:
                    self.logger.debug(f"Received message: {message}")
                    if self._handler is None:
                        self.logger.warning(f"No handler for inbound message: {message}")
                        continue
                    result = self._handler(message)
                    if asyncio.iscoroutine(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error(f"Error handling inbound message: {e}")
                finally:
                    self.message_queue.task_done()
        except asyncio.CancelledError:
            pass

    async def send(self, message: dict[str, Any]):
        if not self.writer or self.writer.is_closing() or self._stopping:
            raise ConnectionError("LSP client writer is not available or closing")

        try:
            self.writer.write(encode_message(message))
            await self.writer.drain()
            self.logger.debug(f"Sent message: {message}")
        except (ConnectionResetError, BrokenPipeError) as e:
            self.logger.error(f"Error sending message: connection lost. {e}")
            self._request_stop()
            raise
