"""Minimal AT Protocol XRPC client for the Bluesky repo endpoints bskysweep needs."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, TypeVar

import requests
from pyrate_limiter import Duration, InMemoryBucket, Limiter, Rate

DEFAULT_SERVICE = "https://bsky.social"
POST_COLLECTION = "app.bsky.feed.post"
DELETE_WRITE_TYPE = "com.atproto.repo.applyWrites#delete"

T = TypeVar("T")


class XrpcError(Exception):
    """A failed XRPC call: HTTP error status, network failure or unusable body."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        error: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error = error
        self.headers: dict[str, str] = {str(k).lower(): str(v) for k, v in (headers or {}).items()}


class RateLimited(XrpcError):
    """HTTP 429 from the server."""


@dataclass
class AuthSession:
    did: str
    handle: str
    access_jwt: str
    refresh_jwt: str | None = None


@dataclass
class Record:
    uri: str
    value: dict[str, Any]
    cid: str | None = None


@dataclass
class RecordPage:
    records: list[Record] = field(default_factory=list)
    cursor: str | None = None


def parse_ratelimit_reset(headers: Mapping[str, str] | None) -> int | None:
    """Return the ``ratelimit-reset`` header as epoch seconds, or None when absent/unparsable."""
    if not headers:
        return None
    raw = None
    for key, value in headers.items():
        if str(key).lower() == "ratelimit-reset":
            raw = value
            break
    if raw is None:
        return None
    try:
        return int(float(str(raw).strip()))
    except (ValueError, OverflowError):
        return None


def preview_response(resp: requests.Response) -> str:
    return resp.text[:260].replace("\n", " ")


class CallLimiter:
    """Client-side courtesy limit shared by every XRPC call.

    Caps concurrent in-flight calls with a semaphore and the call rate with
    pyrate-limiter. Independent of the server's own quotas.
    """

    def __init__(self, max_concurrent: int = 3, calls_per_second: int = 5, name: str = "bsky") -> None:
        if max_concurrent <= 0 or calls_per_second <= 0:
            raise ValueError("max_concurrent and calls_per_second must be positive")
        self.name = name
        self._slots = threading.BoundedSemaphore(max_concurrent)
        bucket = InMemoryBucket([Rate(calls_per_second, Duration.SECOND)])
        self._limiter = Limiter(bucket, max_delay=Duration.MINUTE, raise_when_fail=True)

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self._slots:
            self._limiter.try_acquire(self.name)
            return fn(*args, **kwargs)


class BskyClient:
    def __init__(
        self,
        service: str = DEFAULT_SERVICE,
        *,
        session: requests.Session | None = None,
        timeout: float = 20.0,
    ) -> None:
        self.service = service.rstrip("/")
        self.http = session or requests.Session()
        self.timeout = timeout
        self.auth: AuthSession | None = None

    def _url(self, nsid: str) -> str:
        return f"{self.service}/xrpc/{nsid}"

    def _headers(self, token: str | None) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if token:
            headers["authorization"] = f"Bearer {token}"
        return headers

    def _send(
        self,
        method: str,
        nsid: str,
        *,
        token: str | None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            res = self.http.request(
                method=method,
                url=self._url(nsid),
                headers=self._headers(token),
                params=params,
                json=json_body,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise XrpcError(f"{nsid} REQUEST_ERROR: {exc}") from exc

        payload: dict[str, Any] = {}
        if res.text:
            try:
                obj = res.json()
            except ValueError:
                obj = None
            if isinstance(obj, dict):
                payload = obj

        if not 200 <= res.status_code < 300:
            error = payload.get("error") if isinstance(payload.get("error"), str) else None
            detail = payload.get("message") if isinstance(payload.get("message"), str) else preview_response(res)
            exc_type = RateLimited if res.status_code == 429 else XrpcError
            label = f"{error}: {detail}" if error else detail
            raise exc_type(
                f"{nsid} HTTP {res.status_code}: {label}",
                status=res.status_code,
                error=error,
                headers=res.headers,
            )
        return payload

    def _call(
        self,
        method: str,
        nsid: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if self.auth is None:
            raise XrpcError(f"{nsid}: not logged in")
        try:
            return self._send(method, nsid, token=self.auth.access_jwt, params=params, json_body=json_body)
        except XrpcError as exc:
            # Access tokens expire after a couple of hours; long quota waits outlive them.
            if exc.error != "ExpiredToken" or not self.auth.refresh_jwt:
                raise
        self.refresh()
        print("[INFO] Session token refreshed")
        return self._send(method, nsid, token=self.auth.access_jwt, params=params, json_body=json_body)

    def _store_session(self, payload: dict[str, Any], nsid: str) -> AuthSession:
        did = payload.get("did")
        access = payload.get("accessJwt")
        if not isinstance(did, str) or not did or not isinstance(access, str) or not access:
            raise XrpcError(f"{nsid}: session response missing did/accessJwt")
        handle = payload.get("handle") if isinstance(payload.get("handle"), str) else did
        refresh = payload.get("refreshJwt") if isinstance(payload.get("refreshJwt"), str) else None
        self.auth = AuthSession(did=did, handle=handle, access_jwt=access, refresh_jwt=refresh)
        return self.auth

    def login(self, identifier: str, password: str) -> AuthSession:
        nsid = "com.atproto.server.createSession"
        payload = self._send(
            "POST",
            nsid,
            token=None,
            json_body={"identifier": identifier, "password": password},
        )
        return self._store_session(payload, nsid)

    def resume(self, auth: AuthSession) -> AuthSession:
        self.auth = auth
        return auth

    def refresh(self) -> AuthSession:
        nsid = "com.atproto.server.refreshSession"
        if self.auth is None or not self.auth.refresh_jwt:
            raise XrpcError(f"{nsid}: no refresh token")
        payload = self._send("POST", nsid, token=self.auth.refresh_jwt)
        return self._store_session(payload, nsid)

    def list_records(
        self,
        *,
        repo: str,
        collection: str,
        limit: int = 100,
        cursor: str | None = None,
        reverse: bool = False,
    ) -> RecordPage:
        params: dict[str, Any] = {"repo": repo, "collection": collection, "limit": limit}
        if cursor:
            params["cursor"] = cursor
        if reverse:
            params["reverse"] = "true"
        payload = self._call("GET", "com.atproto.repo.listRecords", params=params)

        raw_records = payload.get("records")
        if not isinstance(raw_records, list):
            raise XrpcError("com.atproto.repo.listRecords: response has no records list")
        records: list[Record] = []
        for item in raw_records:
            if not isinstance(item, dict) or not isinstance(item.get("uri"), str):
                continue
            value = item.get("value") if isinstance(item.get("value"), dict) else {}
            cid = item.get("cid") if isinstance(item.get("cid"), str) else None
            records.append(Record(uri=item["uri"], value=value, cid=cid))

        next_cursor = payload.get("cursor")
        return RecordPage(records=records, cursor=next_cursor if isinstance(next_cursor, str) and next_cursor else None)

    def apply_writes(self, *, repo: str, writes: list[dict[str, Any]]) -> None:
        self._call("POST", "com.atproto.repo.applyWrites", json_body={"repo": repo, "writes": writes})
