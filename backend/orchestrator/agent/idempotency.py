"""Idempotency-Key handling for the process endpoint.

A key is reserved before any work starts: the row is inserted without a
response and committed, so a concurrent request carrying the same key hits
the unique constraint instead of creating a second task. The response is
filled in once the request finishes; a failed request releases its key.
"""
import hashlib
import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orchestrator.agent.models import IdempotencyKey


class IdempotencyConflictError(Exception):
    """Raised when the same idempotency key is used with a different request body."""
    pass


class IdempotencyInProgressError(IdempotencyConflictError):
    """Raised when another request holding the same key has not finished yet."""
    pass


@dataclass
class Reservation:
    """Outcome of reserving a key: either a fresh row to complete or a stored response."""
    record: IdempotencyKey | None = None
    replay: dict[str, Any] | None = None


def compute_request_hash(request_body: Any) -> str:
    """SHA-256 of the canonical JSON form of a request body."""
    canonical_json = json.dumps(request_body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def _find(db: Session, org_id: str, endpoint: str, idempotency_key: str) -> IdempotencyKey | None:
    return db.query(IdempotencyKey).filter(
        IdempotencyKey.org_id == org_id,
        IdempotencyKey.endpoint == endpoint,
        IdempotencyKey.idempotency_key == idempotency_key,
    ).first()


def _stored_response(existing: IdempotencyKey, request_hash: str, idempotency_key: str) -> dict[str, Any]:
    if existing.request_hash != request_hash:
        raise IdempotencyConflictError(
            f"Idempotency key '{idempotency_key}' was already used with a different request body"
        )
    if existing.response_json is None:
        raise IdempotencyInProgressError(
            f"A request with idempotency key '{idempotency_key}' is still being processed"
        )
    return json.loads(existing.response_json)


def check_idempotency(
    db: Session,
    org_id: str,
    endpoint: str,
    idempotency_key: str,
    request_body: Any,
) -> dict[str, Any] | None:
    """Look up a stored response for this key without reserving it.

    Returns:
        The stored response if found and hashes match, None if not found.

    Raises:
        IdempotencyConflictError: If the key exists but the request hash differs.
        IdempotencyInProgressError: If the key is reserved by a request still running.
    """
    existing = _find(db, org_id, endpoint, idempotency_key)
    if existing is None:
        return None
    return _stored_response(existing, compute_request_hash(request_body), idempotency_key)


def reserve_idempotency(
    db: Session,
    org_id: str,
    endpoint: str,
    idempotency_key: str,
    request_body: Any,
) -> Reservation:
    """Claim a key for this request, or return the response already stored for it.

    Commits the reservation so it is visible to concurrent requests.

    Raises:
        IdempotencyConflictError: If the key exists but the request hash differs.
        IdempotencyInProgressError: If the key is reserved by a request still running.
    """
    request_hash = compute_request_hash(request_body)
    existing = _find(db, org_id, endpoint, idempotency_key)
    if existing is not None:
        return Reservation(replay=_stored_response(existing, request_hash, idempotency_key))

    record = IdempotencyKey(
        org_id=org_id,
        endpoint=endpoint,
        idempotency_key=idempotency_key,
        request_hash=request_hash,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # Another request reserved the key between the lookup and the insert
        db.rollback()
        existing = _find(db, org_id, endpoint, idempotency_key)
        if existing is None:
            raise
        return Reservation(replay=_stored_response(existing, request_hash, idempotency_key))
    return Reservation(record=record)


def complete_idempotency(db: Session, record: IdempotencyKey, response: dict[str, Any]) -> None:
    """Store the response for a reserved key and commit."""
    record.response_json = json.dumps(response, default=str)
    db.commit()


def release_idempotency(db: Session, record: IdempotencyKey) -> None:
    """Drop a reservation whose request failed so the client can retry with the same key."""
    db.query(IdempotencyKey).filter(IdempotencyKey.id == record.id).delete()
    db.commit()
