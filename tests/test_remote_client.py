"""
Tests for the Supabase REST client, run against httpx.MockTransport.
"""

import json

import httpx
import pytest

from fintrack.config.settings import SyncSettings
from fintrack.services.sync.remote import RemoteError, SupabaseRemoteStore


class Recorder:
    """MockTransport handler that records requests and replays responses."""

    def __init__(self, *responses):
        self.requests: list[httpx.Request] = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._responses.pop(0) if self._responses else httpx.Response(200, json=[])
        if isinstance(response, Exception):
            raise response
        return response


def make_store(handler, **kwargs) -> SupabaseRemoteStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseRemoteStore(
        "https://demo.supabase.co",
        "anon-key",
        access_token=kwargs.pop("access_token", "user-jwt"),
        client=client,
        backoff=0,
        **kwargs,
    )


class TestRequests:
    """Tests for request shapes."""

    @pytest.mark.anyio
    async def test_upsert(self):
        """Test the upsert URL, headers and body."""
        recorder = Recorder(httpx.Response(201))
        store = make_store(recorder)

        await store.upsert("transactions", {"id": "t-1", "title": "Bus"})

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/transactions"
        assert request.url.params["on_conflict"] == "id"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["authorization"] == "Bearer user-jwt"
        assert request.headers["prefer"] == "resolution=merge-duplicates,return=minimal"
        assert json.loads(request.content) == {"id": "t-1", "title": "Bus"}
        await store.aclose()

    @pytest.mark.anyio
    async def test_select_filters_and_order(self):
        """Test equality filters, booleans, nulls and ordering."""
        rows = [{"id": "t-1"}, {"id": "t-2"}]
        recorder = Recorder(httpx.Response(200, json=rows))
        store = make_store(recorder)

        result = await store.select(
            "transactions",
            {"user_id": "u-1", "is_recurring": True, "recurring_id": None},
            columns="id,date",
            order=["date.asc", "created_at.asc"],
        )

        assert result == rows
        params = recorder.requests[0].url.params
        assert recorder.requests[0].method == "GET"
        assert params["select"] == "id,date"
        assert params["user_id"] == "eq.u-1"
        assert params["is_recurring"] == "eq.true"
        assert params["recurring_id"] == "is.null"
        assert params["order"] == "date.asc,created_at.asc"

    @pytest.mark.anyio
    async def test_delete_in(self):
        """Test the in.() filter combined with the owner filter."""
        recorder = Recorder(httpx.Response(204))
        store = make_store(recorder)

        await store.delete_in("budgets", "id", ["b-1", "b-2"], filters={"user_id": "u-1"})

        params = recorder.requests[0].url.params
        assert recorder.requests[0].method == "DELETE"
        assert params["id"] == 'in.("b-1","b-2")'
        assert params["user_id"] == "eq.u-1"

    @pytest.mark.anyio
    async def test_delete_in_nothing_sends_nothing(self):
        """Test that an empty id list makes no request."""
        recorder = Recorder()
        store = make_store(recorder)
        await store.delete_in("budgets", "id", [])
        assert recorder.requests == []

    @pytest.mark.anyio
    async def test_delete_requires_filters(self):
        """Test that an unfiltered delete is refused."""
        store = make_store(Recorder())
        with pytest.raises(ValueError):
            await store.delete("transactions", {})

    @pytest.mark.anyio
    async def test_anon_key_used_without_token(self):
        """Test the Authorization fallback."""
        recorder = Recorder(httpx.Response(200, json=[]))
        store = make_store(recorder, access_token=None)
        await store.select("transactions", {})
        assert recorder.requests[0].headers["authorization"] == "Bearer anon-key"


class TestErrors:
    """Tests for error mapping and retries."""

    @pytest.mark.anyio
    async def test_http_error_not_retried(self):
        """Test that a 4xx response raises RemoteError at once."""
        recorder = Recorder(
            httpx.Response(409, json={"message": "duplicate key value"}),
        )
        store = make_store(recorder)

        with pytest.raises(RemoteError) as exc_info:
            await store.upsert("transactions", {"id": "t-1"})

        assert exc_info.value.status_code == 409
        assert "duplicate key value" in str(exc_info.value)
        assert len(recorder.requests) == 1

    @pytest.mark.anyio
    async def test_transport_error_retried(self):
        """Test that connection failures are retried until success."""
        def refused():
            return httpx.ConnectError("connection refused")

        recorder = Recorder(refused(), refused(), httpx.Response(200, json=[{"id": "t-1"}]))
        store = make_store(recorder, max_retries=3)

        assert await store.select("transactions", {"user_id": "u-1"}) == [{"id": "t-1"}]
        assert len(recorder.requests) == 3

    @pytest.mark.anyio
    async def test_transport_error_exhausted(self):
        """Test that persistent connection failures become RemoteError."""
        recorder = Recorder(*[httpx.ConnectError("connection refused") for _ in range(3)])
        store = make_store(recorder, max_retries=2)

        with pytest.raises(RemoteError):
            await store.upsert("transactions", {"id": "t-1"})
        assert len(recorder.requests) == 2

    @pytest.mark.anyio
    async def test_non_list_body(self):
        """Test that a select returning an object is rejected."""
        store = make_store(Recorder(httpx.Response(200, json={"id": "t-1"})))
        with pytest.raises(RemoteError):
            await store.select("transactions", {})


class TestFromSettings:
    """Tests for construction from SyncSettings."""

    def test_from_settings(self):
        """Test URL normalisation and credential wiring."""
        settings = SyncSettings(
            supabase_url="https://demo.supabase.co/",
            supabase_key="anon-key",
            access_token="jwt",
        )
        store = SupabaseRemoteStore.from_settings(settings)

        assert store.rest_url == "https://demo.supabase.co/rest/v1"
        assert store.headers["Authorization"] == "Bearer jwt"

    def test_rejects_non_http_url(self):
        """Test that the Supabase URL must be http(s)."""
        with pytest.raises(ValueError):
            SyncSettings(supabase_url="ftp://demo", supabase_key="k")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
