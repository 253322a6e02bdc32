"""
Tests for the remote repository client and its error mapping.
"""

import json
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest

from social.graze.atstore.atproto.repo import RepoClient, error_from_response
from social.graze.atstore.errors import (
    RemoteErrorKind,
    RemoteNotFoundError,
    RemoteOtherError,
    RemoteSchemaInvalidError,
    RemoteTransportError,
)
from tests.test_atproto_chain import xrpc_response, create_mock_response


@pytest.mark.parametrize(
    "status,body,expected",
    [
        (400, {"error": "InvalidSchema", "message": "x"}, RemoteSchemaInvalidError),
        (400, {"error": "InvalidRecord"}, RemoteSchemaInvalidError),
        (400, {"error": "LexiconNotFound"}, RemoteSchemaInvalidError),
        (400, {"error": "RecordNotFound"}, RemoteNotFoundError),
        (400, {"error": "RepoNotFound"}, RemoteNotFoundError),
        (404, "Not Found", RemoteNotFoundError),
        (400, {"error": "InvalidRequest", "message": "Record not found"}, RemoteOtherError),
        (500, {"error": "InternalServerError"}, RemoteOtherError),
        (502, "Bad Gateway", RemoteOtherError),
    ],
)
def test_error_from_response(status, body, expected):
    error = error_from_response("com.atproto.repo.putRecord", xrpc_response(status, body))
    assert type(error) is expected
    assert error.status == status


def test_error_carries_code_and_kind():
    error = error_from_response(
        "com.atproto.repo.putRecord",
        xrpc_response(400, {"error": "InvalidRecord", "message": "title too long"}),
    )
    assert error.kind is RemoteErrorKind.SCHEMA_INVALID
    assert error.error == "InvalidRecord"
    assert "title too long" in str(error)


def session_returning(response):
    session = Mock()
    session.request = AsyncMock(return_value=response)
    return session


async def test_put_record_request():
    session = session_returning(
        create_mock_response(body={"uri": "at://did:plc:a/c.d.e/k", "cid": "bafy"})
    )
    client = RepoClient(
        session, "https://pds.example.com/", headers={"Authorization": "Bearer t"}
    )

    result = await client.put_record("did:plc:a", "c.d.e", "k", {"title": "x"}, False)

    assert result.uri == "at://did:plc:a/c.d.e/k"
    assert result.cid == "bafy"
    method, url = session.request.await_args.args
    kwargs = session.request.await_args.kwargs
    assert method == "post"
    assert url == "https://pds.example.com/xrpc/com.atproto.repo.putRecord"
    assert kwargs["headers"]["Authorization"] == "Bearer t"
    assert kwargs["headers"]["Content-Type"] == "application/json"
    assert json.loads(kwargs["data"]) == {
        "repo": "did:plc:a",
        "collection": "c.d.e",
        "rkey": "k",
        "record": {"title": "x"},
        "validate": False,
    }


async def test_create_record_request():
    session = session_returning(create_mock_response(body={"uri": "at://u", "cid": "c"}))
    client = RepoClient(session, "https://pds.example.com")

    result = await client.create_record("did:plc:a", "c.d.e", "k", {"title": "x"})

    assert result.cid == "c"
    url = session.request.await_args.args[1]
    assert url.endswith("/xrpc/com.atproto.repo.createRecord")
    assert json.loads(session.request.await_args.kwargs["data"])["validate"] is True


async def test_delete_record_request():
    session = session_returning(create_mock_response(body={}))
    client = RepoClient(session, "https://pds.example.com")

    await client.delete_record("did:plc:a", "c.d.e", "k")

    payload = json.loads(session.request.await_args.kwargs["data"])
    assert payload == {"repo": "did:plc:a", "collection": "c.d.e", "rkey": "k"}


async def test_error_response_raises_typed_error():
    session = session_returning(
        create_mock_response(status=400, body={"error": "RecordNotFound"})
    )
    client = RepoClient(session, "https://pds.example.com")

    with pytest.raises(RemoteNotFoundError):
        await client.put_record("did:plc:a", "c.d.e", "k", {})


async def test_client_error_is_transport_error():
    session = Mock()
    session.request = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
    client = RepoClient(session, "https://pds.example.com")

    with pytest.raises(RemoteTransportError):
        await client.put_record("did:plc:a", "c.d.e", "k", {})
