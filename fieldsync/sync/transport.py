"""Network transport between the local replica and the sync backend.

Defines the contracts the sync engine depends on (``SyncTransport`` and
``IdentityProvider``), the JSON wire models, an httpx implementation and
an in-memory loopback backend.

Wire protocol (JSON over HTTPS):
- ``POST {backend}/sync/push``  SyncPushRequest  -> SyncPushResponse
- ``POST {backend}/sync/pull``  SyncPullRequest  -> SyncPullResponse
- ``GET  {backend}/health``     connectivity check
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field, ValidationError

from fieldsync.errors import SyncAuthorizationError, SyncNetworkError
from fieldsync.utils import now_ms

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

# =============================================================================
# Wire models
# =============================================================================


class SyncOperation(BaseModel):
    """A single outbox entry sent to the backend."""

    entry_id: int
    operation: Literal["create", "update", "delete"]
    table: str
    record_id: str
    data: Optional[Dict[str, Any]] = None
    queued_at: int


class SyncPushRequest(BaseModel):
    device_id: str
    operations: List[SyncOperation]


class OperationAck(BaseModel):
    """Per-entry outcome of a push."""

    entry_id: int
    accepted: bool
    error: Optional[str] = None


class SyncPushResponse(BaseModel):
    acks: List[OperationAck] = Field(default_factory=list)
    server_time: int


class SyncPullRequest(BaseModel):
    device_id: str
    since: Optional[str] = None  # opaque checkpoint from the previous pull
    limit: int = 100


class RemoteChange(BaseModel):
    table: str
    record_id: str
    data: Dict[str, Any]


class SyncPullResponse(BaseModel):
    changes: List[RemoteChange] = Field(default_factory=list)
    checkpoint: Optional[str] = None
    has_more: bool = False
    server_time: int


# =============================================================================
# Contracts
# =============================================================================


@runtime_checkable
class IdentityProvider(Protocol):
    """Opaque source of identity and credentials."""

    @property
    def device_id(self) -> str: ...

    @property
    def user_id(self) -> Optional[str]: ...

    def get_credential(self) -> Optional[str]: ...

    def refresh_credential(self) -> Optional[str]: ...


@runtime_checkable
class SyncTransport(Protocol):
    def upload(self, operations: List[SyncOperation]) -> SyncPushResponse: ...

    def pull_changes(self, since: Optional[str], limit: int = 100) -> SyncPullResponse: ...

    def ping(self) -> bool: ...


class StaticIdentityProvider:
    """Identity built from configuration, with an optional refresh hook."""

    def __init__(
        self,
        device_id: str,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        refresh: Optional[Callable[[], Optional[str]]] = None,
    ):
        self._device_id = device_id
        self._user_id = user_id
        self._token = token
        self._refresh = refresh

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def get_credential(self) -> Optional[str]:
        return self._token

    def refresh_credential(self) -> Optional[str]:
        if self._refresh is not None:
            self._token = self._refresh()
        return self._token


# =============================================================================
# httpx transport
# =============================================================================


class HttpTransport:
    """JSON-over-HTTP transport using httpx.

    Timeouts and connection failures surface as SyncNetworkError. A 401 or
    403 triggers one credential refresh and retry before raising
    SyncAuthorizationError.
    """

    def __init__(
        self,
        backend_url: str,
        identity: IdentityProvider,
        timeout: float = DEFAULT_TIMEOUT,
        client=None,
    ):
        self.backend_url = backend_url.rstrip("/")
        self.identity = identity
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "X-Device-Id": self.identity.device_id}
        token = self.identity.get_credential()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _post(self, path: str, body: BaseModel):
        url = f"{self.backend_url}{path}"
        payload = body.model_dump(mode="json")
        for attempt in (1, 2):
            try:
                response = self._client.post(url, json=payload, headers=self._headers())
            except httpx.TimeoutException as e:
                raise SyncNetworkError(f"Timeout calling {path}: {e}") from e
            except httpx.HTTPError as e:
                raise SyncNetworkError(f"Request to {path} failed: {e}") from e

            if response.status_code in (401, 403):
                if attempt == 1:
                    logger.info(f"Backend rejected credential ({response.status_code}); refreshing")
                    self.identity.refresh_credential()
                    continue
                raise SyncAuthorizationError(
                    f"Backend rejected credential for {path}", status_code=response.status_code
                )
            if response.status_code >= 400:
                raise SyncNetworkError(
                    f"Backend returned {response.status_code} for {path}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            try:
                return response.json()
            except ValueError as e:
                raise SyncNetworkError(f"Invalid JSON from {path}: {e}") from e
        raise SyncAuthorizationError(f"Backend rejected credential for {path}")

    def upload(self, operations: List[SyncOperation]) -> SyncPushResponse:
        request = SyncPushRequest(device_id=self.identity.device_id, operations=operations)
        data = self._post("/sync/push", request)
        try:
            return SyncPushResponse.model_validate(data)
        except ValidationError as e:
            raise SyncNetworkError(f"Malformed push response: {e}") from e

    def pull_changes(self, since: Optional[str], limit: int = 100) -> SyncPullResponse:
        request = SyncPullRequest(device_id=self.identity.device_id, since=since, limit=limit)
        data = self._post("/sync/pull", request)
        try:
            return SyncPullResponse.model_validate(data)
        except ValidationError as e:
            raise SyncNetworkError(f"Malformed pull response: {e}") from e

    def ping(self) -> bool:
        try:
            response = self._client.get(
                f"{self.backend_url}/health", timeout=min(self.timeout, 5.0)
            )
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity check failed: {e}")
            return False


# =============================================================================
# In-memory loopback backend
# =============================================================================


class InMemoryTransport:
    """A loopback backend holding its own copy of every record.

    Accepts every upload unless told otherwise and serves the change log
    back through paged pulls. The ``online`` flag, ``fail_uploads`` counter
    and ``reject`` set simulate network loss, transient failures and
    per-record rejections.
    """

    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self.records: Dict[tuple, Dict[str, Any]] = {}
        self.log: List[RemoteChange] = []
        self.online = True
        self.fail_uploads = 0
        self.reject: set = set()
        self.uploads: List[SyncOperation] = []
        self._lock = threading.Lock()

    def _check_online(self) -> None:
        if not self.online:
            raise SyncNetworkError("Network unreachable")

    def put_remote(self, table: str, record: Dict[str, Any]) -> None:
        """Apply a change as if another device had pushed it."""
        with self._lock:
            key = (table, str(record["id"]))
            self.records[key] = dict(record)
            self.log.append(RemoteChange(table=table, record_id=key[1], data=dict(record)))

    def upload(self, operations: List[SyncOperation]) -> SyncPushResponse:
        self._check_online()
        if self.fail_uploads > 0:
            self.fail_uploads -= 1
            raise SyncNetworkError("Simulated transient upload failure")
        acks = []
        with self._lock:
            for op in operations:
                self.uploads.append(op)
                if op.record_id in self.reject:
                    acks.append(OperationAck(entry_id=op.entry_id, accepted=False, error="rejected"))
                    continue
                data = dict(op.data or {"id": op.record_id, "deleted": True})
                data["synced"] = True
                key = (op.table, op.record_id)
                self.records[key] = data
                self.log.append(RemoteChange(table=op.table, record_id=op.record_id, data=data))
                acks.append(OperationAck(entry_id=op.entry_id, accepted=True))
        return SyncPushResponse(acks=acks, server_time=now_ms())

    def pull_changes(self, since: Optional[str], limit: int = 100) -> SyncPullResponse:
        self._check_online()
        start = int(since) if since else 0
        size = min(limit, self.page_size)
        with self._lock:
            page = self.log[start : start + size]
            end = start + len(page)
            has_more = end < len(self.log)
        return SyncPullResponse(
            changes=page, checkpoint=str(end), has_more=has_more, server_time=now_ms()
        )

    def ping(self) -> bool:
        return self.online
