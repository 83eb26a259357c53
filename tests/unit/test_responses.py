import pytest
from starlette.requests import Request

from doorman.api.responses import read_json_body
from doorman.core.errors import PayloadTooLarge, SignupValidationError


def chunked_request(chunks: list[bytes]) -> tuple[Request, list[bytes]]:
    """A request whose body arrives in pieces with no Content-Length."""
    pending = list(chunks)
    pulled: list[bytes] = []

    async def receive() -> dict:
        if not pending:
            return {"type": "http.request", "body": b"", "more_body": False}
        chunk = pending.pop(0)
        pulled.append(chunk)
        return {"type": "http.request", "body": chunk, "more_body": bool(pending)}

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/signup",
        "headers": [(b"content-type", b"application/json"), (b"transfer-encoding", b"chunked")],
        "query_string": b"",
    }
    return Request(scope, receive), pulled


@pytest.mark.asyncio
async def test_oversized_stream_stops_at_the_cap() -> None:
    request, pulled = chunked_request([b"x" * 1024] * 500)

    with pytest.raises(PayloadTooLarge):
        await read_json_body(request, max_bytes=10 * 1024)

    assert len(pulled) == 11


@pytest.mark.asyncio
async def test_small_stream_is_decoded() -> None:
    request, _ = chunked_request([b'{"email": "jane@', b'example.com"}'])

    assert await read_json_body(request, max_bytes=10 * 1024) == {"email": "jane@example.com"}


@pytest.mark.asyncio
async def test_empty_body_is_an_empty_object() -> None:
    request, _ = chunked_request([])

    assert await read_json_body(request, max_bytes=10 * 1024) == {}


@pytest.mark.asyncio
async def test_array_body_is_rejected() -> None:
    request, _ = chunked_request([b"[1, 2]"])

    with pytest.raises(SignupValidationError):
        await read_json_body(request, max_bytes=10 * 1024)
