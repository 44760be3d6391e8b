"""
Book record handlers.

- GET /api/books - All book records in the user's repository
- PUT /api/books/{uri}/status - Change the status of one book
- POST /api/books/status - Change the status of many books at once

Every handler works on the session named by the request's auth token and goes
through the DPoP request executor, so an expired access token is refreshed
transparently once.
"""

import logging
from typing import List
from urllib.parse import unquote
from aiohttp import web

from social.graze.bookshelf.app.config import DPoPExecutorAppKey, SettingsAppKey
from social.graze.bookshelf.app.handlers.helpers import json_body, session_from_request
from social.graze.bookshelf.atproto.repo import (
    RecordUpdate,
    bulk_update_records,
    list_records,
    update_record,
)
from social.graze.bookshelf.books import (
    BOOK_COLLECTION,
    parse_book_status,
    status_changes,
)
from social.graze.bookshelf.errors import InvalidRequest

logger = logging.getLogger(__name__)


async def handle_list_books(request: web.Request):
    session = await session_from_request(request)
    records, _ = await list_records(
        request.app[DPoPExecutorAppKey], session, BOOK_COLLECTION
    )
    return web.json_response(
        {
            "books": [record.model_dump() for record in records],
            "total": len(records),
        }
    )


async def handle_update_book_status(request: web.Request):
    session = await session_from_request(request)
    uri = unquote(request.match_info["uri"])

    body = await json_body(request)
    status = parse_book_status(body.get("status", None))

    written, _ = await update_record(
        request.app[DPoPExecutorAppKey], session, uri, status_changes(status)
    )
    return web.json_response(
        {
            "success": True,
            "message": f"Status updated to {status.label}",
            "uri": written.uri,
            "cid": written.cid,
            "newStatus": status.value,
        }
    )


async def handle_bulk_update_book_status(request: web.Request):
    """
    Request body:
        updates: List of `{"uri": ..., "status": ...}`

    Returns:
        JSON `{"updated", "failed", "items"}` with one outcome per requested update
    """
    session = await session_from_request(request)
    body = await json_body(request)

    raw_updates = body.get("updates", None)
    if not isinstance(raw_updates, list) or len(raw_updates) == 0:
        raise InvalidRequest("error-request-1005 updates must be a non-empty list")

    updates: List[RecordUpdate] = []
    for raw_update in raw_updates:
        if not isinstance(raw_update, dict) or not isinstance(
            raw_update.get("uri", None), str
        ):
            raise InvalidRequest("error-request-1006 Each update needs a uri")
        status = parse_book_status(raw_update.get("status", None))
        updates.append(
            RecordUpdate(uri=raw_update["uri"], changes=status_changes(status))
        )

    result, _ = await bulk_update_records(
        request.app[DPoPExecutorAppKey],
        session,
        updates,
        concurrency=request.app[SettingsAppKey].bulk_update_concurrency,
    )
    logger.info(
        "Bulk update for %s: %d updated, %d failed",
        session.did,
        result.updated,
        result.failed,
    )
    return web.json_response(result.model_dump())
