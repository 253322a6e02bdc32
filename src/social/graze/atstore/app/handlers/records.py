"""
Record API.

Reads are public. Writes require a service token and always target the
caller's own repository: the record uri is built from the token subject, the
configured collection and the record key. A write commits locally first and
then schedules a background mirror; the response never waits for it.
"""

import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web
from pydantic import ValidationError

from social.graze.atstore.app.config import (
    MetricsClientAppKey,
    MirrorTaskSetAppKey,
    RecordStoreAppKey,
    SettingsAppKey,
)
from social.graze.atstore.app.handlers.helpers import json_error, require_auth_token
from social.graze.atstore.errors import NotFoundError
from social.graze.atstore.model.records import (
    ContentRecord,
    generate_rkey,
    make_record_uri,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100
EDITABLE_FIELDS = ("title", "body", "summary", "tags", "published", "updated_at")


def record_json(record: ContentRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json")


def _limit(request: web.Request, default: int) -> int:
    raw = request.query.get("limit", None)
    if raw is None:
        return default
    try:
        limit = int(raw)
    except ValueError:
        json_error(web.HTTPBadRequest, "limit must be an integer")
    if limit < 1 or limit > MAX_LIST_LIMIT:
        json_error(
            web.HTTPBadRequest, f"limit must be between 1 and {MAX_LIST_LIMIT}"
        )
    return limit


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        json_error(web.HTTPBadRequest, "Request body must be JSON")
    if not isinstance(body, dict):
        json_error(web.HTTPBadRequest, "Request body must be a JSON object")
    return body


def _validation_error(e: ValidationError):
    json_error(
        web.HTTPBadRequest,
        "Invalid record",
        details=[
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ],
    )


async def handle_list_latest(request: web.Request):
    records = await request.app[RecordStoreAppKey].list_latest(_limit(request, 10))
    return web.json_response({"records": [record_json(r) for r in records]})


async def handle_list_published(request: web.Request):
    records = await request.app[RecordStoreAppKey].list_published(
        _limit(request, 20)
    )
    return web.json_response({"records": [record_json(r) for r in records]})


async def handle_my_latest(request: web.Request):
    auth_token = await require_auth_token(request)
    record = await request.app[RecordStoreAppKey].latest_by_author(auth_token.subject)
    if record is None:
        raise NotFoundError.author_records(auth_token.subject)
    return web.json_response(record_json(record))


async def handle_get_record(request: web.Request):
    repo: Optional[str] = request.query.get("repo", None)
    if not repo:
        json_error(web.HTTPBadRequest, "repo is required")

    settings = request.app[SettingsAppKey]
    uri = make_record_uri(repo, settings.record_collection, request.match_info["rkey"])
    record = await request.app[RecordStoreAppKey].get(uri)
    if record is None:
        raise NotFoundError.record(uri)
    return web.json_response(record_json(record))


async def handle_create_record(request: web.Request):
    auth_token = await require_auth_token(request)
    body = await _json_body(request)

    settings = request.app[SettingsAppKey]
    uri = make_record_uri(auth_token.subject, settings.record_collection, generate_rkey())

    fields = {k: body[k] for k in EDITABLE_FIELDS + ("created_at",) if k in body}
    try:
        record = ContentRecord(uri=uri, author_id=auth_token.subject, **fields)
    except ValidationError as e:
        _validation_error(e)

    stored = await request.app[RecordStoreAppKey].create(record)
    request.app[MirrorTaskSetAppKey].schedule_write(stored.uri)
    request.app[MetricsClientAppKey].increment(
        "atstore.records.write", 1, tag_dict={"operation": "create"}
    )

    return web.json_response(record_json(stored), status=201)


async def handle_put_record(request: web.Request):
    """
    Create or update the caller's record with the given key.

    Fields missing from the body keep their stored values. `updated_at`
    defaults to now.
    """
    auth_token = await require_auth_token(request)
    body = await _json_body(request)

    settings = request.app[SettingsAppKey]
    record_store = request.app[RecordStoreAppKey]
    uri = make_record_uri(
        auth_token.subject, settings.record_collection, request.match_info["rkey"]
    )

    fields: Dict[str, Any] = {"updated_at": utcnow()}
    existing = await record_store.get(uri)
    if existing is not None:
        fields.update(existing.model_dump(include=set(EDITABLE_FIELDS) - {"updated_at"}))
        fields["created_at"] = existing.created_at
    fields.update({k: body[k] for k in EDITABLE_FIELDS + ("created_at",) if k in body})

    try:
        record = ContentRecord(uri=uri, author_id=auth_token.subject, **fields)
    except ValidationError as e:
        _validation_error(e)

    stored = await record_store.upsert(record)
    request.app[MirrorTaskSetAppKey].schedule_write(stored.uri)
    request.app[MetricsClientAppKey].increment(
        "atstore.records.write", 1, tag_dict={"operation": "upsert"}
    )

    return web.json_response(record_json(stored))


async def handle_delete_record(request: web.Request):
    auth_token = await require_auth_token(request)

    settings = request.app[SettingsAppKey]
    uri = make_record_uri(
        auth_token.subject, settings.record_collection, request.match_info["rkey"]
    )

    removed = await request.app[RecordStoreAppKey].delete(
        uri, author_id=auth_token.subject
    )
    if removed:
        request.app[MirrorTaskSetAppKey].schedule_delete(uri, auth_token.subject)
        request.app[MetricsClientAppKey].increment(
            "atstore.records.write", 1, tag_dict={"operation": "delete"}
        )

    return web.json_response({"uri": uri, "deleted": removed})
