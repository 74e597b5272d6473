import asyncio

import pytest
from prometheus_client import REGISTRY

from firelink.connection import ConnectionState, FirebaseService, MemoryBackend
from firelink.core.exceptions import AuthenticationError, LifecycleError


class GatedBackend(MemoryBackend):
    """MemoryBackend whose authenticate() blocks until auth_gate is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.auth_gate = None

    def initialize(self, config, identity):
        session = super().initialize(config, identity)
        gate = self.auth_gate
        if gate is not None:
            original = session.authenticate

            async def authenticate(token):
                await original(token)
                await gate.wait()

            session.authenticate = authenticate
        return session


class FailingBackend(MemoryBackend):
    def __init__(self, error):
        super().__init__()
        self.error = error

    def initialize(self, config, identity):
        self.initialize_count += 1
        raise self.error


def gate_go_online(session):
    gate = asyncio.Event()
    original = session.go_online

    async def go_online():
        result = await original()
        await gate.wait()
        return result

    session.go_online = go_online
    return gate


async def until(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.mark.asyncio
async def test_connect_initializes_and_authenticates():
    backend = MemoryBackend()
    service = FirebaseService(backend, name="firebase-service-uut")
    options = {"prop": "val"}

    await service.connect(options, "authKey")

    session = backend.sessions[0]
    assert service.is_connected()
    assert service.state is ConnectionState.CONNECTED
    assert session.config == options
    assert session.identity == "firebase-service-uut"
    assert session.auth_tokens == ["authKey"]
    assert service.session is session


def test_default_name_is_generated_and_unique():
    backend = MemoryBackend()
    a = FirebaseService(backend)
    b = FirebaseService(backend)

    assert a.name
    assert a.name != b.name
    assert a.state is ConnectionState.UNINITIALIZED
    assert a.session is None
    assert not a.is_connected()


@pytest.mark.asyncio
async def test_second_connect_goes_online_instead_of_initializing():
    backend = MemoryBackend()
    service = FirebaseService(backend)

    await service.connect()
    session = backend.sessions[0]
    assert session.go_online_calls == 0

    session.online_result = "back-online"
    result = await service.connect()

    assert result == "back-online"
    assert session.go_online_calls == 1
    assert backend.initialize_count == 1
    assert session.auth_tokens == [None]
    assert service.is_connected()


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_attempt():
    backend = GatedBackend()
    backend.auth_gate = asyncio.Event()
    service = FirebaseService(backend)

    first = asyncio.create_task(service.connect())
    second = asyncio.create_task(service.connect())
    await until(lambda: backend.initialize_count == 1)
    assert service.state is ConnectionState.CONNECTING

    backend.auth_gate.set()
    await asyncio.gather(first, second)

    assert backend.initialize_count == 1
    assert backend.sessions[0].go_online_calls == 0
    assert service.is_connected()


@pytest.mark.asyncio
async def test_auth_failure_leaves_instance_uninitialized_and_retryable():
    backend = MemoryBackend(valid_tokens={"good-token"})
    service = FirebaseService(backend)

    with pytest.raises(AuthenticationError):
        await service.connect(None, "bad-token")

    assert service.state is ConnectionState.UNINITIALIZED
    assert service.session is None
    assert backend.sessions[0].destroy_calls == 1

    await service.connect(None, "good-token")
    assert service.is_connected()
    assert backend.initialize_count == 2


@pytest.mark.asyncio
async def test_initialize_failure_is_propagated_and_terminate_destroys_nothing():
    expected = RuntimeError("init fail mock")
    backend = FailingBackend(expected)
    service = FirebaseService(backend)

    with pytest.raises(RuntimeError) as exc_info:
        await service.connect()
    assert exc_info.value is expected
    assert service.state is ConnectionState.UNINITIALIZED

    assert await service.terminate() is None
    assert service.state is ConnectionState.TERMINATED
    assert backend.sessions == []


@pytest.mark.asyncio
async def test_disconnect_goes_offline_and_reconnect_resumes():
    backend = MemoryBackend()
    service = FirebaseService(backend)
    await service.connect()
    session = backend.sessions[0]

    await service.disconnect()

    assert session.go_offline_calls == 1
    assert service.state is ConnectionState.UNINITIALIZED
    assert service.session is None

    await service.connect()
    assert service.is_connected()
    assert backend.initialize_count == 1
    assert session.go_online_calls == 1


@pytest.mark.asyncio
async def test_disconnect_is_noop_when_not_connected():
    backend = MemoryBackend()
    service = FirebaseService(backend)

    await service.disconnect()
    assert service.state is ConnectionState.UNINITIALIZED

    await service.connect()
    await service.disconnect()
    await service.disconnect()
    assert backend.sessions[0].go_offline_calls == 1


@pytest.mark.asyncio
async def test_terminate_destroys_session_and_returns_result():
    backend = MemoryBackend()
    service = FirebaseService(backend)
    await service.connect()
    session = backend.sessions[0]
    session.destroy_result = "mock-resolved-value"

    returned = await service.terminate()

    assert returned == "mock-resolved-value"
    assert session.destroy_calls == 1
    assert session.go_offline_calls == 1
    assert service.state is ConnectionState.TERMINATED
    assert service.session is None


@pytest.mark.asyncio
async def test_terminate_twice_destroys_once():
    backend = MemoryBackend()
    service = FirebaseService(backend)
    await service.connect()

    await service.terminate()
    assert await service.terminate() is None

    assert backend.sessions[0].destroy_calls == 1


@pytest.mark.asyncio
async def test_terminate_after_disconnect_still_destroys_session():
    backend = MemoryBackend()
    service = FirebaseService(backend)
    await service.connect()
    await service.disconnect()

    await service.terminate()

    session = backend.sessions[0]
    assert session.destroy_calls == 1
    assert session.go_offline_calls == 1


@pytest.mark.asyncio
async def test_terminate_without_connect_is_harmless():
    backend = MemoryBackend()
    service = FirebaseService(backend)

    assert await service.terminate() is None
    assert service.state is ConnectionState.TERMINATED
    assert backend.initialize_count == 0


@pytest.mark.asyncio
async def test_no_reconnect_after_termination():
    backend = MemoryBackend()
    service = FirebaseService(backend, name="firebase-service-uut")
    await service.connect()
    await service.terminate()

    with pytest.raises(LifecycleError) as exc_info:
        await service.connect()

    assert str(exc_info.value) == (
        "Can't connect a firebase service after termination, "
        "please use a different instance (name=firebase-service-uut)"
    )
    assert exc_info.value.name == "firebase-service-uut"
    assert backend.initialize_count == 1


@pytest.mark.asyncio
async def test_terminate_wins_over_pending_authentication():
    backend = GatedBackend()
    backend.auth_gate = asyncio.Event()
    service = FirebaseService(backend)

    connecting = asyncio.create_task(service.connect())
    await until(lambda: backend.initialize_count == 1 and backend.sessions[0].auth_tokens)

    await service.terminate()
    backend.auth_gate.set()

    with pytest.raises(LifecycleError):
        await connecting

    assert service.state is ConnectionState.TERMINATED
    assert not service.is_connected()
    assert backend.sessions[0].destroy_calls == 1


@pytest.mark.asyncio
async def test_terminate_wins_over_pending_go_online():
    backend = MemoryBackend()
    service = FirebaseService(backend)
    await service.connect()
    session = backend.sessions[0]
    gate = gate_go_online(session)

    connecting = asyncio.create_task(service.connect())
    await until(lambda: session.go_online_calls == 1)
    assert service.state is ConnectionState.CONNECTING

    await service.terminate()
    gate.set()

    with pytest.raises(LifecycleError):
        await connecting

    assert service.state is ConnectionState.TERMINATED
    assert session.destroy_calls == 1


@pytest.mark.asyncio
async def test_disconnect_ignored_after_termination():
    backend = MemoryBackend()
    service = FirebaseService(backend)
    await service.connect()
    await service.terminate()

    await service.disconnect()

    assert service.state is ConnectionState.TERMINATED
    assert backend.sessions[0].go_offline_calls == 1


@pytest.mark.asyncio
async def test_connection_status_metric_tracks_state():
    service = FirebaseService(MemoryBackend(), name="metrics-uut")

    await service.connect()
    assert REGISTRY.get_sample_value("firelink_connection_status", {"instance": "metrics-uut"}) == 1.0

    await service.disconnect()
    assert REGISTRY.get_sample_value("firelink_connection_status", {"instance": "metrics-uut"}) == 0.0


@pytest.mark.asyncio
async def test_terminate_wins_before_connect_attempt_starts():
    backend = MemoryBackend()
    service = FirebaseService(backend)

    results = await asyncio.gather(service.connect(), service.terminate(), return_exceptions=True)

    assert isinstance(results[0], LifecycleError)
    assert results[1] is None
    assert service.state is ConnectionState.TERMINATED
    assert backend.initialize_count == 0


@pytest.mark.asyncio
async def test_terminate_removes_instance_metrics():
    service = FirebaseService(MemoryBackend(), name="metrics-terminated")
    await service.connect()
    service.listen_on_path("a").when("value").call(lambda _: None)
    assert REGISTRY.get_sample_value("firelink_active_subscriptions", {"instance": "metrics-terminated"}) == 1.0

    await service.terminate()

    assert REGISTRY.get_sample_value("firelink_connection_status", {"instance": "metrics-terminated"}) is None
    assert REGISTRY.get_sample_value("firelink_active_subscriptions", {"instance": "metrics-terminated"}) is None
