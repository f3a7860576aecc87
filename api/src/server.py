"""
Build server - accepts connections and feeds requests to a worker pool.

One accept thread, one reader thread per connection and a fixed number of
worker threads. Readers decode requests onto a single shared FIFO queue;
each worker pops a request, serves it and writes exactly one reply to the
connection it came from.
"""

import logging
import queue
import socket
import threading
import time
from typing import List, NamedTuple, Optional, Set, Tuple

from api.src.models.request import (
    ErrorResponse,
    MalformedRequest,
    Request,
    RequestError,
    WireModel,
    encode_response,
    parse_request,
    split_documents,
)
from api.src.services.dispatcher import RequestDispatcher

logger = logging.getLogger(__name__)

# Largest request accepted in a single receive
MAX_REQUEST_SIZE = 64 * 1024

# How often the accept loop checks whether the server is stopping
ACCEPT_POLL_INTERVAL = 0.5

class QueuedRequest(NamedTuple):
    request: Request
    connection: "Connection"

class Connection:
    """A client socket plus the reader thread decoding its requests."""

    def __init__(self, server: "BuildServer", sock: socket.socket, address):
        self.server = server
        self.sock = sock
        self.address = address
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._pending = 0
        self._reading = True
        self._closed = False
        self._thread = threading.Thread(
            target=self._read_loop, name=f"conn-{address}", daemon=True
        )

    def start(self):
        self._thread.start()

    def _read_loop(self):
        try:
            while True:
                try:
                    data = self.sock.recv(MAX_REQUEST_SIZE)
                except OSError:
                    break
                if not data:
                    break
                self._decode(data)
        finally:
            with self._state_lock:
                self._reading = False
            self._close_if_idle()

    def _decode(self, data: bytes):
        text = data.decode("utf-8", errors="replace")
        try:
            for document in split_documents(text):
                try:
                    request = parse_request(document)
                except MalformedRequest as e:
                    self.reject(e)
                    continue
                with self._state_lock:
                    self._pending += 1
                self.server.enqueue(request, self)
        except MalformedRequest as e:
            self.reject(e)

    def reject(self, error: RequestError, action: Optional[str] = None):
        logger.warning(f"Rejected request from {self.address}: {error}")
        self.send_response(ErrorResponse(action=action, error=error.kind, message=str(error)))

    def send_response(self, response: WireModel):
        payload = encode_response(response)
        with self._send_lock:
            try:
                self.sock.sendall(payload)
            except OSError as e:
                logger.warning(f"Unable to reply to {self.address}: {e}")

    def request_done(self):
        with self._state_lock:
            self._pending -= 1
        self._close_if_idle()

    def _close_if_idle(self):
        # Keep the socket open while replies are owed, even after the client
        # has finished sending
        with self._state_lock:
            if self._reading or self._pending > 0 or self._closed:
                return
            self._closed = True
        self._teardown()

    def close(self):
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._teardown()

    def _teardown(self):
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Already disconnected
        self.sock.close()
        self.server._connection_closed(self)

class Responder:
    """Writes the single reply a request is owed."""

    def __init__(self, connection: Connection):
        self.connection = connection
        self.sent = False

    def __call__(self, response: WireModel):
        if self.sent:
            raise RuntimeError("Request has already been answered")
        self.sent = True
        try:
            self.connection.send_response(response)
        finally:
            self.connection.request_done()

class BuildServer:
    def __init__(
        self,
        dispatcher: RequestDispatcher,
        max_connections: int = 64,
        stop_grace_period: float = 3.0,
    ):
        self.dispatcher = dispatcher
        self.max_connections = max_connections
        self.stop_grace_period = stop_grace_period

        self._listener: Optional[socket.socket] = None
        self._requests: "queue.Queue[Optional[QueuedRequest]]" = queue.Queue()
        self._slots = threading.BoundedSemaphore(max_connections)
        self._connections: Set[Connection] = set()
        self._connections_lock = threading.Lock()
        self._stopping = threading.Event()
        self._accept_thread: Optional[threading.Thread] = None
        self._workers: List[threading.Thread] = []

    @property
    def address(self) -> Tuple[str, int]:
        if self._listener is None:
            raise RuntimeError("Server has not been started")
        return self._listener.getsockname()[:2]

    def start(self, address: Tuple[str, int], max_workers: int, accept_backlog: int):
        """
        Bind, listen and start the accept and worker threads.
        Raises OSError if the address cannot be bound.
        """
        if self._listener is not None:
            raise RuntimeError("Server has already been started")

        self._listener = socket.create_server(address, backlog=accept_backlog)
        self._listener.settimeout(ACCEPT_POLL_INTERVAL)

        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="accept", daemon=True
        )
        self._accept_thread.start()

        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"worker-{i}", daemon=True)
            for i in range(max_workers)
        ]
        for worker in self._workers:
            worker.start()

        logger.info(f"Listening on {self.address} with {max_workers} workers")

    def stop(self, kill_running: bool = False):
        """
        Stop accepting, let workers drain the queue and release the socket.

        Workers still busy after the grace period are left running unless
        kill_running is set, in which case their child processes are killed.
        A run already saving its results is always waited for, so the
        results lock is released before the process exits.
        """
        if self._listener is None or self._stopping.is_set():
            return
        logger.info("Stopping server...")
        self._stopping.set()

        if self._accept_thread is not None:
            self._accept_thread.join(self.stop_grace_period)

        if kill_running:
            self.dispatcher.terminate_running()

        for _ in self._workers:
            self._requests.put(None)

        deadline = time.monotonic() + self.stop_grace_period
        for worker in self._workers:
            worker.join(max(0.0, deadline - time.monotonic()))

        busy = [w.name for w in self._workers if w.is_alive()]
        if busy:
            logger.warning(f"Workers still busy after {self.stop_grace_period}s: {', '.join(busy)}")

        # A save holds the results lock; it is bounded by the git timeouts
        if self.dispatcher.publishing:
            logger.info("Waiting for results being published...")
            self.dispatcher.wait_for_publishes()

        with self._connections_lock:
            connections = list(self._connections)
        for connection in connections:
            connection.close()

        self._listener.close()
        logger.info("Server stopped.")

    def enqueue(self, request: Request, connection: Connection):
        self._requests.put(QueuedRequest(request, connection))

    def _accept_loop(self):
        while not self._stopping.is_set():
            # Block for a free connection slot rather than spinning
            if not self._slots.acquire(timeout=ACCEPT_POLL_INTERVAL):
                continue
            try:
                sock, address = self._listener.accept()
            except socket.timeout:
                self._slots.release()
                continue
            except OSError as e:
                self._slots.release()
                if self._stopping.is_set():
                    break
                logger.error(f"Error accepting connection: {e}")
                self._stopping.wait(ACCEPT_POLL_INTERVAL)
                continue

            sock.settimeout(None)
            connection = Connection(self, sock, address)
            with self._connections_lock:
                self._connections.add(connection)
            logger.debug(f"Accepted connection from {address}")
            connection.start()

    def _connection_closed(self, connection: Connection):
        with self._connections_lock:
            self._connections.discard(connection)
        self._slots.release()
        logger.debug(f"Connection from {connection.address} closed")

    def _worker_loop(self):
        while True:
            item = self._requests.get()
            if item is None:
                break
            self._process(item)

    def _process(self, item: QueuedRequest):
        request, connection = item
        responder = Responder(connection)
        try:
            self.dispatcher.handle(request, responder)
        except RequestError as e:
            if responder.sent:
                logger.error(f"Error after replying to {request.action} request: {e}")
            else:
                logger.warning(f"Rejected {request.action} request: {e}")
                responder(ErrorResponse(action=request.action, error=e.kind, message=str(e)))
        except Exception:
            logger.exception(f"Error processing {request.action} request")
            if not responder.sent:
                responder(ErrorResponse(
                    action=request.action,
                    error="InternalError",
                    message="The request could not be processed",
                ))
        else:
            if not responder.sent:
                logger.error(f"No reply produced for {request.action} request")
                responder(ErrorResponse(
                    action=request.action,
                    error="InternalError",
                    message="No reply was produced",
                ))
