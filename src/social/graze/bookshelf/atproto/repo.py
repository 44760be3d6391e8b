"""
Repository record operations.

Reads and writes records in the user's own repository through the DPoP request
executor. Every operation takes the session explicitly and returns the session
to keep using next to its result, since the executor may have refreshed it.

Writes are compare-and-swap: `update_record` reads the current record, merges the
changes and writes with `swapRecord` set to the CID that was read. A concurrent
modification makes the PDS reject the write with `InvalidSwap`, which surfaces as
`RecordConflict`. Nothing is retried or overwritten automatically.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from pydantic import BaseModel, ValidationError

from social.graze.bookshelf.atproto.dpop import DPoPRequestExecutor, DPoPResponse
from social.graze.bookshelf.errors import (
    AccessDenied,
    BookshelfException,
    InvalidRecordUri,
    RecordConflict,
    RecordNotFound,
    RemoteError,
    TokenExpired,
    Unauthenticated,
)
from social.graze.bookshelf.model.store import Session

logger = logging.getLogger(__name__)

LIST_RECORDS_LIMIT = 100


class AtUri(BaseModel):
    repo: str
    collection: str
    rkey: str

    def __str__(self) -> str:
        return f"at://{self.repo}/{self.collection}/{self.rkey}"


class RecordView(BaseModel):
    uri: str
    cid: Optional[str] = None
    value: Dict[str, Any]


class PutRecordResult(BaseModel):
    uri: str
    cid: str


class RecordUpdate(BaseModel):
    """One requested change within a bulk update."""

    uri: str
    changes: Dict[str, Any]


class RecordUpdateOutcome(BaseModel):
    uri: str
    success: bool
    cid: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class BulkUpdateResult(BaseModel):
    updated: int
    failed: int
    items: List[RecordUpdateOutcome]


def parse_at_uri(uri: str) -> AtUri:
    """
    Split `at://<repo>/<collection>/<rkey>` into its parts.

    Raises:
        InvalidRecordUri: If the value is not a record URI
    """
    value = (uri or "").strip()
    if not value.startswith("at://"):
        raise InvalidRecordUri(f"error-repo-1004 Not an AT URI: {uri}")
    parts = value.removeprefix("at://").split("/")
    if len(parts) != 3 or any(len(part) == 0 for part in parts):
        raise InvalidRecordUri(f"error-repo-1005 Not a record URI: {uri}")
    return AtUri(repo=parts[0], collection=parts[1], rkey=parts[2])


def xrpc_url(session: Session, nsid: str) -> str:
    return f"{session.pds_url.rstrip('/')}/xrpc/{nsid}"


def raise_for_response(response: DPoPResponse, uri: str, operation: str) -> None:
    """Map a failed XRPC response to the error taxonomy."""
    if response.ok:
        return

    code = response.error_code()
    payload = response.json_body() or None

    if response.status == 401:
        if code == "invalid_token":
            raise TokenExpired(
                "error-repo-1009 Access token rejected after refresh, please login again",
                payload=payload,
            )
        raise Unauthenticated(
            "error-repo-1003 OAuth session expired, please login again",
            payload=payload,
        )
    if code == "InvalidSwap" or response.status == 409:
        raise RecordConflict.for_uri(uri, payload)
    if code == "RecordNotFound" or response.status == 404:
        raise RecordNotFound.for_uri(uri, payload)
    raise RemoteError(
        f"error-repo-1000 {operation} failed with status {response.status}",
        remote_status=response.status,
        payload=payload,
    )


async def list_records(
    executor: DPoPRequestExecutor,
    session: Session,
    collection: str,
    repo: Optional[str] = None,
    limit: int = LIST_RECORDS_LIMIT,
) -> Tuple[List[RecordView], Session]:
    """
    List every record of a collection, following `cursor` until it runs out.

    Pagination stops when a page has no cursor, is empty, or repeats the
    previous cursor.
    """
    repo = repo or session.did
    url = xrpc_url(session, "com.atproto.repo.listRecords")
    records: List[RecordView] = []
    cursor: Optional[str] = None

    while True:
        params = {"repo": repo, "collection": collection, "limit": str(limit)}
        if cursor is not None:
            params["cursor"] = cursor

        result = await executor.execute("GET", url, session, params=params)
        session = result.session
        raise_for_response(result.response, f"at://{repo}/{collection}", "listRecords")

        body = result.response.json_body()
        page = body.get("records", None) or []
        for item in page:
            try:
                records.append(RecordView.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed record in %s: %s", collection, item)

        next_cursor = body.get("cursor", None)
        if not next_cursor or len(page) == 0 or next_cursor == cursor:
            break
        cursor = next_cursor

    return records, session


async def get_record(
    executor: DPoPRequestExecutor,
    session: Session,
    repo: str,
    collection: str,
    rkey: str,
) -> Tuple[RecordView, Session]:
    uri = f"at://{repo}/{collection}/{rkey}"
    result = await executor.execute(
        "GET",
        xrpc_url(session, "com.atproto.repo.getRecord"),
        session,
        params={"repo": repo, "collection": collection, "rkey": rkey},
    )
    raise_for_response(result.response, uri, "getRecord")
    try:
        record = RecordView.model_validate(result.response.body)
    except ValidationError as e:
        raise RemoteError(
            f"error-repo-1006 getRecord returned an invalid record for {uri}",
            remote_status=result.response.status,
        ) from e
    return record, result.session


async def put_record(
    executor: DPoPRequestExecutor,
    session: Session,
    repo: str,
    collection: str,
    rkey: str,
    record: Dict[str, Any],
    swap_record: Optional[str] = None,
) -> Tuple[PutRecordResult, Session]:
    """
    Write a record. With `swap_record`, the write only succeeds if the record's
    current CID still equals it.

    Raises:
        RecordConflict: The record changed since `swap_record` was read
    """
    uri = f"at://{repo}/{collection}/{rkey}"
    body: Dict[str, Any] = {
        "repo": repo,
        "collection": collection,
        "rkey": rkey,
        "record": record,
    }
    if swap_record is not None:
        body["swapRecord"] = swap_record

    result = await executor.execute(
        "POST", xrpc_url(session, "com.atproto.repo.putRecord"), session, json=body
    )
    raise_for_response(result.response, uri, "putRecord")
    try:
        written = PutRecordResult.model_validate(result.response.body)
    except ValidationError as e:
        raise RemoteError(
            f"error-repo-1007 putRecord returned an invalid result for {uri}",
            remote_status=result.response.status,
        ) from e
    return written, result.session


async def update_record(
    executor: DPoPRequestExecutor,
    session: Session,
    uri: str,
    changes: Dict[str, Any],
) -> Tuple[PutRecordResult, Session]:
    """
    Merge `changes` into a record of the session's own repository.

    Raises:
        InvalidRecordUri: The URI is malformed
        AccessDenied: The record belongs to another repository
        RecordNotFound: The record does not exist
        RecordConflict: The record was modified between read and write
    """
    at_uri = parse_at_uri(uri)
    if at_uri.repo != session.did:
        raise AccessDenied(
            f"error-repo-1008 Cannot modify {uri}: not in the repository of {session.did}"
        )

    current, session = await get_record(
        executor, session, at_uri.repo, at_uri.collection, at_uri.rkey
    )
    record = dict(current.value)
    record.update(changes)

    written, session = await put_record(
        executor,
        session,
        at_uri.repo,
        at_uri.collection,
        at_uri.rkey,
        record,
        swap_record=current.cid,
    )
    logger.info("Updated %s (%s -> %s)", uri, current.cid, written.cid)
    return written, session


async def bulk_update_records(
    executor: DPoPRequestExecutor,
    session: Session,
    updates: Sequence[RecordUpdate],
    concurrency: int = 5,
) -> Tuple[BulkUpdateResult, Session]:
    """
    Apply independent record updates concurrently and report each outcome.

    Each update is its own read-then-compare-and-swap; a failure of one never
    affects the others. At most `concurrency` updates are in flight.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    latest = session

    async def apply(update: RecordUpdate) -> RecordUpdateOutcome:
        nonlocal latest
        async with semaphore:
            try:
                written, updated_session = await update_record(
                    executor, latest, update.uri, update.changes
                )
            except BookshelfException as e:
                logger.info("Update of %s failed: %s", update.uri, e.message)
                return RecordUpdateOutcome(
                    uri=update.uri, success=False, error=e.code, message=e.message
                )
            latest = updated_session
            return RecordUpdateOutcome(uri=update.uri, success=True, cid=written.cid)

    items = await asyncio.gather(*(apply(update) for update in updates))
    updated = sum(1 for item in items if item.success)
    return (
        BulkUpdateResult(updated=updated, failed=len(items) - updated, items=list(items)),
        latest,
    )
