"""
Tests for the homeserver API handle, against httpx.MockTransport.
"""

import json

import httpx
import pytest

from e2ee.base_apis import BaseApis

BASE_URL = "https://hs.example.org"


def _api(handler, access_token="secret-token"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BaseApis(BASE_URL + "/", access_token, http_client=client)


@pytest.mark.asyncio
async def test_query_keys():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"device_keys": {"@a:example.org": {}}})

    api = _api(handler)
    response = await api.query_keys(["@a:example.org", "@b:example.org"])
    await api.aclose()

    assert response == {"device_keys": {"@a:example.org": {}}}
    request, = requests
    assert request.method == "POST"
    assert request.url == BASE_URL + "/_matrix/client/r0/keys/query"
    assert request.headers["Authorization"] == "Bearer secret-token"
    assert json.loads(request.content) == {"device_keys": {"@a:example.org": [], "@b:example.org": []}}


@pytest.mark.asyncio
async def test_claim_one_time_keys():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"one_time_keys": {}})

    api = _api(handler)
    await api.claim_one_time_keys([("@a:example.org", "DEV1"), ("@a:example.org", "DEV2")])

    assert requests[0].url.path == "/_matrix/client/r0/keys/claim"
    assert json.loads(requests[0].content) == {
        "one_time_keys": {"@a:example.org": {"DEV1": "signed_curve25519", "DEV2": "signed_curve25519"}}
    }


@pytest.mark.asyncio
async def test_upload_keys_omits_empty_parts():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"one_time_key_counts": {}})

    api = _api(handler)
    await api.upload_keys(device_keys={"device_id": "DEV"})
    await api.upload_keys(one_time_keys={"signed_curve25519:AAAAAQ": {"key": "k"}})

    assert bodies == [
        {"device_keys": {"device_id": "DEV"}},
        {"one_time_keys": {"signed_curve25519:AAAAAQ": {"key": "k"}}},
    ]


@pytest.mark.asyncio
async def test_send_to_device_uses_new_transaction_ids():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={})

    api = _api(handler, access_token=None)
    messages = {"@a:example.org": {"DEV": {"body": "x"}}}
    await api.send_to_device("m.room.encrypted", messages)
    await api.send_to_device("m.room.encrypted", messages)

    first, second = requests
    assert first.method == "PUT"
    assert first.url.path.startswith("/_matrix/client/r0/sendToDevice/m.room.encrypted/")
    assert first.url.path != second.url.path
    assert "Authorization" not in first.headers
    assert json.loads(first.content) == {"messages": messages}


@pytest.mark.asyncio
async def test_error_status_is_raised():
    def handler(request):
        return httpx.Response(500, json={"errcode": "M_UNKNOWN"})

    api = _api(handler)
    with pytest.raises(httpx.HTTPStatusError):
        await api.query_keys(["@a:example.org"])
