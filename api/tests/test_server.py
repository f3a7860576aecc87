"""Tests for the build server over real sockets."""

import json
import socket
import threading
import time

import pytest
from api.src.server import BuildServer
from api.src.services.dispatcher import RequestDispatcher
from api.src.services.registry import RunRegistry, TaskRegistry
from controller.src.testkit import make_outcome, make_spec

class GatedPipeline:
    """Pipeline double that blocks until the test opens its gate, or the shared one."""

    gate = threading.Event()
    created = []

    def __init__(self, spec, runner, workspace_root):
        self.spec = spec
        self.released = threading.Event()
        GatedPipeline.created.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def run_all(self):
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if GatedPipeline.gate.is_set() or self.released.wait(0.05):
                break
        return make_outcome(spec=self.spec)

class InstantPipeline(GatedPipeline):
    def run_all(self):
        return make_outcome(spec=self.spec)

class BlockingStore:
    """Result store double that holds save_results until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.saved = []

    def save_results(self, spec, outcome, test_results):
        self.entered.set()
        self.release.wait(10)
        self.saved.append(spec.title)

class Client:
    def __init__(self, address):
        self.sock = socket.create_connection(address, timeout=10)
        self.buffer = ""
        self.decoder = json.JSONDecoder()

    def send(self, document):
        self.sock.sendall(json.dumps(document).encode("utf-8"))

    def receive(self):
        while True:
            text = self.buffer.lstrip()
            if text:
                try:
                    document, end = self.decoder.raw_decode(text)
                except json.JSONDecodeError:
                    pass
                else:
                    self.buffer = text[end:]
                    return document
            data = self.sock.recv(4096)
            if not data:
                raise ConnectionError("Server closed the connection")
            self.buffer += data.decode("utf-8")

    def request(self, document):
        self.send(document)
        return self.receive()

    def close(self):
        self.sock.close()

@pytest.fixture
def server():
    GatedPipeline.gate = threading.Event()
    GatedPipeline.created = []
    dispatcher = RequestDispatcher(
        tasks=TaskRegistry([make_spec("demo")]),
        runs=RunRegistry(),
        link_base="results",
        pipeline_factory=GatedPipeline,
    )
    build_server = BuildServer(dispatcher, max_connections=8, stop_grace_period=2.0)
    build_server.start(("127.0.0.1", 0), max_workers=4, accept_backlog=8)
    yield build_server
    GatedPipeline.gate.set()
    build_server.stop()

@pytest.fixture
def client(server):
    c = Client(server.address)
    yield c
    c.close()

def _wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not reached")
        time.sleep(0.02)

def _wait_for_completion(client, reference, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        reply = client.request({"action": "status", "buildReference": reference})
        if reply["completed"]:
            return reply
        time.sleep(0.05)
    raise AssertionError(f"Run {reference} did not complete")

def test_run_then_status(server, client):
    reply = client.request({"action": "run", "taskName": "demo"})
    assert reply == {"action": "run", "success": True, "buildReference": 0}

    status = client.request({"action": "status", "buildReference": 0})
    assert status["completed"] is False
    assert status["resultLink"] == "results/demo"

    GatedPipeline.gate.set()
    status = _wait_for_completion(client, 0)
    assert status["published"] is False

def test_concurrent_runs_get_distinct_references(server):
    clients = [Client(server.address) for _ in range(3)]
    try:
        for c in clients:
            c.send({"action": "run", "taskName": "demo"})
        references = [c.receive()["buildReference"] for c in clients]
    finally:
        for c in clients:
            c.close()

    assert sorted(references) == [0, 1, 2]

def test_pipelined_requests_on_one_connection(server, client):
    client.send({"action": "run", "taskName": "demo"})
    client.send({"action": "run", "taskName": "demo"})

    references = {client.receive()["buildReference"], client.receive()["buildReference"]}

    assert references == {0, 1}

def test_unknown_task(server, client):
    reply = client.request({"action": "run", "taskName": "nope"})

    assert reply["action"] == "run"
    assert reply["success"] is False
    assert reply["error"] == "UnknownTask"
    assert "nope" in reply["message"]

def test_unknown_run(server, client):
    reply = client.request({"action": "status", "buildReference": 42})

    assert reply["success"] is False
    assert reply["error"] == "UnknownRun"

def test_malformed_json(server, client):
    reply = client.request("not an object")

    assert reply["success"] is False
    assert reply["error"] == "MalformedRequest"

    client.sock.sendall(b"{garbage")
    assert client.receive()["error"] == "MalformedRequest"

def test_missing_arguments(server, client):
    reply = client.request({"action": "status"})

    assert reply["error"] == "MalformedRequest"
    assert "buildReference" in reply["message"]

def test_reply_after_client_half_close(server, client):
    client.send({"action": "run", "taskName": "demo"})
    client.sock.shutdown(socket.SHUT_WR)

    assert client.receive()["buildReference"] == 0

def test_stop_closes_listener():
    dispatcher = RequestDispatcher(tasks=TaskRegistry([make_spec("demo")]), runs=RunRegistry())
    build_server = BuildServer(dispatcher, stop_grace_period=1.0)
    build_server.start(("127.0.0.1", 0), max_workers=2, accept_backlog=4)
    address = build_server.address

    build_server.stop()

    with pytest.raises(OSError):
        socket.create_connection(address, timeout=2).close()

def test_stop_can_kill_running_commands(monkeypatch):
    dispatcher = RequestDispatcher(tasks=TaskRegistry([make_spec("demo")]), runs=RunRegistry())
    killed = []
    monkeypatch.setattr(dispatcher, "terminate_running", lambda: killed.append(True))
    build_server = BuildServer(dispatcher, stop_grace_period=1.0)
    build_server.start(("127.0.0.1", 0), max_workers=1, accept_backlog=4)

    build_server.stop(kill_running=True)

    assert killed == [True]

def test_start_twice_fails(server):
    with pytest.raises(RuntimeError, match="already been started"):
        server.start(("127.0.0.1", 0), max_workers=1, accept_backlog=1)

def test_status_tracks_each_run_separately(server, client):
    assert client.request({"action": "run", "taskName": "demo"})["buildReference"] == 0
    _wait_until(lambda: len(GatedPipeline.created) == 1)
    assert client.request({"action": "run", "taskName": "demo"})["buildReference"] == 1
    _wait_until(lambda: len(GatedPipeline.created) == 2)

    GatedPipeline.created[0].released.set()

    assert _wait_for_completion(client, 0)["completed"] is True
    assert client.request({"action": "status", "buildReference": 1})["completed"] is False

    GatedPipeline.created[1].released.set()
    assert _wait_for_completion(client, 1)["completed"] is True

def test_stop_waits_for_results_being_published():
    store = BlockingStore()
    dispatcher = RequestDispatcher(
        tasks=TaskRegistry([make_spec("demo")]),
        runs=RunRegistry(),
        result_store=store,
        pipeline_factory=InstantPipeline,
    )
    build_server = BuildServer(dispatcher, stop_grace_period=0.2)
    build_server.start(("127.0.0.1", 0), max_workers=1, accept_backlog=4)
    client = Client(build_server.address)
    try:
        assert client.request({"action": "run", "taskName": "demo"})["buildReference"] == 0
        assert store.entered.wait(10)

        stopper = threading.Thread(target=build_server.stop)
        stopper.start()
        stopper.join(1.0)
        assert stopper.is_alive()
        assert store.saved == []

        store.release.set()
        stopper.join(10)
        assert not stopper.is_alive()
    finally:
        store.release.set()
        client.close()

    assert store.saved == ["demo"]
    assert dispatcher.publishing == 0
    _wait_until(lambda: dispatcher.runs.get(0).completed)
    assert dispatcher.runs.get(0).published
