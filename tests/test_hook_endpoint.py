import asyncio
import sys
import time
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from monohook.main import create_app
from monohook.services.invoker import CommandInvoker
from monohook.services.jobs import JobBuilder
from monohook.settings import HookConfig


def _app(**overrides):
    values = {"command": sys.executable, "args": ("-c", "pass")}
    values.update(overrides)
    return create_app(HookConfig(**values), on_scheduler_crash=None)


def _wait_until(condition, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.02)


# The scheduler only starts with the app's startup event, so clients built
# outside a ``with`` block leave accepted jobs sitting in the queue.


@pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH"])
def test_non_post_is_rejected(method):
    app = _app()
    client = TestClient(app)

    response = client.request(method, "/")

    assert response.status_code == 405
    assert len(app.state.admission_queue) == 0


def test_unauthorized_request_is_rejected():
    app = _app(authorization="letmein")
    client = TestClient(app)

    assert client.post("/").status_code == 401
    assert client.post("/", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.post("/?authorization=wrong").status_code == 401
    assert len(app.state.admission_queue) == 0


def test_unauthorized_status_can_be_forbidden():
    app = _app(authorization="letmein", unauthorized_status=403)
    client = TestClient(app)

    assert client.post("/").status_code == 403
    assert len(app.state.admission_queue) == 0


def test_scenario_b_bearer_and_query_credentials():
    app = _app(authorization="letmein")
    client = TestClient(app)

    assert client.post("/").status_code == 401
    assert client.post("/", headers={"Authorization": "Bearer letmein"}).status_code == 202
    assert client.post("/", params={"authorization": "letmein"}).status_code == 202
    assert len(app.state.admission_queue) == 2


def test_scenario_c_full_queue_answers_429():
    app = _app(buffer=1)
    client = TestClient(app)
    queue = app.state.admission_queue

    assert client.post("/").status_code == 202
    assert client.post("/").status_code == 429
    assert len(queue) == 1

    assert queue.try_dequeue() is not None
    assert client.post("/").status_code == 202


def test_unbounded_queue_never_answers_429():
    app = _app(buffer=0)
    client = TestClient(app)

    statuses = {client.post("/").status_code for _ in range(25)}

    assert statuses == {202}
    assert len(app.state.admission_queue) == 25


def test_any_path_triggers_the_hook():
    app = _app()
    client = TestClient(app)

    assert client.post("/deploy/production").status_code == 202
    assert len(app.state.admission_queue) == 1


def test_jobs_are_queued_in_arrival_order():
    app = _app(buffer=0)
    client = TestClient(app)
    for _ in range(4):
        client.post("/")

    queue = app.state.admission_queue
    ids = [queue.try_dequeue().job_id for _ in range(4)]
    assert ids == sorted(ids)


def test_headers_and_url_are_forwarded():
    app = _app(forward_request_headers=True, forward_request_url=True)
    client = TestClient(app)

    response = client.post(
        "/deploy?ref=main&force=1",
        headers={"X-GitHub-Event": "push", "Content-Type": "application/json"},
    )

    assert response.status_code == 202
    job = app.state.admission_queue.try_dequeue()
    assert job.env["MONOHOOK_REQUEST_HEADER_X_GITHUB_EVENT"] == "push"
    assert job.env["MONOHOOK_REQUEST_HEADER_CONTENT_TYPE"] == "application/json"
    assert job.env["MONOHOOK_REQUEST_URL"] == "/deploy?ref=main&force=1"


def test_body_is_copied_into_the_job_pipe():
    app = _app(forward_request_body=True)
    client = TestClient(app)

    assert client.post("/", content=b"hello").status_code == 202

    job = app.state.admission_queue.try_dequeue()
    try:
        # Write end is closed once the body has been copied.
        assert job.input_stream.read() == b"hello"
        assert job.input_stream.read() == b""
    finally:
        job.close()


def test_refused_request_gets_no_pipe_data():
    app = _app(forward_request_body=True, buffer=1)
    client = TestClient(app)

    assert client.post("/", content=b"first").status_code == 202
    assert client.post("/", content=b"second").status_code == 429

    job = app.state.admission_queue.try_dequeue()
    try:
        assert job.input_stream.read() == b"first"
    finally:
        job.close()
    assert app.state.admission_queue.try_dequeue() is None


def test_scenario_a_command_runs_once(capfd):
    app = _app(args=("-c", "print('hooked from child', flush=True)"), buffer=10, concurrency=1)

    with TestClient(app) as client:
        assert client.post("/").status_code == 202
        scheduler = app.state.scheduler
        _wait_until(lambda: scheduler.dispatched == 1 and scheduler.active == 0)

    assert scheduler.dispatched == 1
    assert "hooked from child" in capfd.readouterr().out


def test_scenario_d_body_reaches_command_stdin(tmp_path):
    received = tmp_path / "stdin.txt"
    code = f"import sys; open({str(received)!r}, 'wb').write(sys.stdin.buffer.read())"
    app = _app(args=("-c", code), forward_request_body=True)

    with TestClient(app) as client:
        assert client.post("/", content=b"hello").status_code == 202
        scheduler = app.state.scheduler
        _wait_until(lambda: scheduler.dispatched == 1 and scheduler.active == 0)

    assert received.read_bytes() == b"hello"


def test_response_carries_request_id():
    client = TestClient(_app())

    response = client.post("/", headers={"X-Request-Id": "abc-123"})

    assert response.headers["X-Request-Id"] == "abc-123"
    assert response.content == b""


def test_unsupported_method_gets_an_empty_405():
    client = TestClient(_app())

    response = client.request("TRACE", "/")

    assert response.status_code == 405
    assert response.content == b""


class RecordingBuilder(JobBuilder):
    def __init__(self, config):
        super().__init__(config)
        self.env_builds = 0

    def build_env(self, headers, url):
        self.env_builds += 1
        return super().build_env(headers, url)


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_request_never_builds_a_job(status):
    app = _app(
        authorization="letmein",
        unauthorized_status=status,
        forward_request_headers=True,
        forward_request_url=True,
    )
    builder = RecordingBuilder(app.state.config)
    app.state.job_builder = builder
    client = TestClient(app)

    assert client.post("/", headers={"Authorization": "Bearer wrong"}).status_code == status
    assert client.post("/?authorization=wrong").status_code == status
    assert builder.env_builds == 0

    assert client.post("/", headers={"Authorization": "Bearer letmein"}).status_code == 202
    assert builder.env_builds == 1


class RecordingCommandInvoker(CommandInvoker):
    def __init__(self):
        super().__init__()
        self.results = []

    async def run(self, job):
        ok = await super().run(job)
        self.results.append(ok)
        return ok


async def _wait_for(condition, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def test_app_built_outside_the_event_loop_dispatches_jobs():
    invoker = RecordingCommandInvoker()
    crashes = []
    # Same order as the CLI: the app exists before uvicorn's loop does.
    app = create_app(
        HookConfig(command=sys.executable, args=("-c", "pass")),
        invoker=invoker,
        on_scheduler_crash=crashes.append,
    )

    async def scenario():
        scheduler = app.state.scheduler
        scheduler.start()
        job, _ = app.state.job_builder.build([], "/")
        assert app.state.admission_queue.try_enqueue(job)
        await _wait_for(lambda: invoker.results == [True])
        assert scheduler.started
        await scheduler.stop()

    asyncio.run(scenario())
    assert crashes == []


def test_many_large_bodies_waiting_at_once():
    body_size = 200_000
    requests = 45
    invoker = RecordingCommandInvoker()
    code = f"import sys; sys.exit(0 if len(sys.stdin.buffer.read()) == {body_size} else 1)"
    app = create_app(
        HookConfig(
            command=sys.executable,
            args=("-c", code),
            buffer=0,
            concurrency=1,
            forward_request_body=True,
        ),
        invoker=invoker,
        on_scheduler_crash=None,
    )

    async def scenario():
        scheduler = app.state.scheduler
        scheduler.start()
        transport = httpx.ASGITransport(app=app)
        try:
            async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=None) as client:
                # Every handler but one waits for a child that has not started yet.
                responses = await asyncio.wait_for(
                    asyncio.gather(
                        *(client.post("/", content=b"x" * body_size) for _ in range(requests))
                    ),
                    timeout=60,
                )
            await _wait_for(lambda: len(invoker.results) == requests, timeout=60)
        finally:
            await scheduler.stop()
        return [response.status_code for response in responses]

    assert asyncio.run(scenario()) == [202] * requests
    assert invoker.results == [True] * requests
