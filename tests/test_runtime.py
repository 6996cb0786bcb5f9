"""Tests for parked authorization requests held in process memory."""

import time

from contruum.service.runtime import load_authorization_request, park_authorization_request


class TestParkedRequests:
    async def test_load_returns_a_copy(self, runtime):
        request_id = await park_authorization_request(runtime, {"client_id": "web"})
        loaded = await load_authorization_request(runtime, request_id)
        loaded["client_id"] = "changed"
        assert await load_authorization_request(runtime, request_id) == {"client_id": "web"}

    async def test_consume_removes_the_request(self, runtime):
        request_id = await park_authorization_request(runtime, {"client_id": "web"})
        assert await load_authorization_request(runtime, request_id, consume=True) == {"client_id": "web"}
        assert request_id not in runtime._local_requests
        assert await load_authorization_request(runtime, request_id) is None

    async def test_expired_request_is_dropped(self, runtime):
        request_id = await park_authorization_request(runtime, {"client_id": "web"})
        params, _ = runtime._local_requests[request_id]
        runtime._local_requests[request_id] = (params, time.monotonic() - 1)
        assert await load_authorization_request(runtime, request_id) is None
        assert request_id not in runtime._local_requests

    async def test_unknown_and_missing_ids(self, runtime):
        assert await load_authorization_request(runtime, None) is None
        assert await load_authorization_request(runtime, "no-such-request") is None
