import pytest

from firelink.connection import SERVER_TIMESTAMP, FirebaseService, MemoryBackend
from firelink.core.exceptions import NotConnectedError


@pytest.mark.asyncio
async def test_get_values_at_path():
    data = {"prop": "value"}
    backend = MemoryBackend()
    backend.set("/some-path-with-values", data)
    service = FirebaseService(backend)
    await service.connect()

    values = await service.get_values_at_path("/some-path-with-values")

    assert values == data


@pytest.mark.asyncio
async def test_get_values_requires_connection():
    backend = MemoryBackend(data={"some-path-with-values": {"prop": "value"}})
    service = FirebaseService(backend)
    await service.disconnect()

    with pytest.raises(NotConnectedError) as exc_info:
        service.get_values_at_path("/some-path-with-values")

    assert str(exc_info.value) == (
        "FirebaseService.get_values_at_path: not connected! (path=some-path-with-values)"
    )


@pytest.mark.asyncio
async def test_get_values_fails_after_disconnect():
    backend = MemoryBackend(data={"a": 1})
    service = FirebaseService(backend)
    await service.connect()
    await service.disconnect()

    with pytest.raises(NotConnectedError):
        await service.get_values_at_path("/a")


@pytest.mark.asyncio
async def test_get_server_time():
    now = 1_700_000_000_123
    backend = MemoryBackend(clock=lambda: now)
    service = FirebaseService(backend)
    await service.connect()

    server_time = await service.get_firebase_server_time("/timestamp")

    assert server_time == now
    assert backend.get("/timestamp") == now


@pytest.mark.asyncio
async def test_server_time_requires_connection():
    service = FirebaseService(MemoryBackend(clock=lambda: 1))
    await service.disconnect()

    with pytest.raises(NotConnectedError) as exc_info:
        service.get_firebase_server_time("/path/timestamp-mock")

    assert str(exc_info.value) == (
        "FirebaseService.get_firebase_server_time: not connected! (path=timestamp-mock)"
    )


@pytest.mark.asyncio
async def test_server_time_write_notifies_value_listeners():
    backend = MemoryBackend(clock=lambda: 42)
    service = FirebaseService(backend)
    await service.connect()
    seen = []

    service.listen_on_path("/clock").when("value").call(lambda event: seen.append(event.value))
    await service.get_firebase_server_time("/clock")

    assert seen == [42]


@pytest.mark.asyncio
async def test_server_timestamp_nested_in_objects_is_materialized():
    backend = MemoryBackend(clock=lambda: 7)
    session = backend.initialize({}, "raw")
    await session.authenticate(None)

    await session.reference("/messages/1").write({"text": "hi", "sent_at": SERVER_TIMESTAMP})

    assert backend.get("/messages/1") == {"text": "hi", "sent_at": 7}
