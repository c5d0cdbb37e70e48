"""
Sync storage backends -- where the document travels.

Each backend knows how to push and pull one payload. The coordinator
picks which one(s) to use based on settings.

Chrome: Chunked copy in the quota-limited synced scope. Zero setup.
Drive: Google Drive appDataFolder file, bearer token from a provider.
GitHub: Private gist holding one file, personal access token.
Feishu: Bitable rows, one per note. Receives PLAIN TEXT, not ciphertext,
    so the table stays readable in Feishu. Opt-in trade-off.

Failure policy: ``pull`` never raises, it returns None when the remote
is empty, unreachable or refuses our credentials. ``push`` raises a
SyncError subclass so the coordinator can react.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import Any, Callable, Optional, Union

import requests

from ..models import Document, DomainRecord, Note, PageRecord
from ..settings import FeishuConfig, SettingsStore
from ..storage import KeyValueStore, StorageQuotaError
from ..store import new_note_id, now_ms
from .models import ChunkMeta, SyncProvider

logger = logging.getLogger("pagenote.sync.backends")

Payload = Union[str, Document]

REMOTE_FILENAME = "pagenote-memo.enc"
DEFAULT_TIMEOUT = 30.0


class SyncError(Exception):
    """Base class for backend failures."""


class QuotaExceeded(SyncError):
    """The chunked store cannot hold the payload."""


class AuthError(SyncError):
    """Missing or rejected credentials."""


class TransportError(SyncError):
    """Network failure or unexpected response from a remote API."""


class SyncBackend(ABC):
    """Abstract sync transport backend."""

    #: Whether push/pull carry ciphertext (str) or a plain Document.
    encrypted: bool = True

    @abstractmethod
    def push(self, payload: Payload) -> None:
        """Replace the remote copy with ``payload``.

        Raises:
            SyncError: On any failure.
        """

    @abstractmethod
    def pull(self) -> Optional[Payload]:
        """Fetch the remote copy.

        Returns:
            The payload, or None if nothing usable is available.
        """

    @abstractmethod
    def available(self) -> bool:
        """Check if this backend is configured well enough to try."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""


# ---------------------------------------------------------------------------
# Chunked key/value store
# ---------------------------------------------------------------------------


class ChromeSyncBackend(SyncBackend):
    """Chunked payload in the quota-limited synced scope.

    The scope caps each item at ~8KB and the whole area at ~100KB, so
    the payload is cut into fixed-size chunks under a shared prefix with
    a ``meta`` record. Old chunks are dropped in the same write that
    stores the new ones, so a smaller payload never leaves stale tail
    chunks behind.

    Args:
        synced: The synced scope.
        chunk_size: Characters per chunk.
        quota: Largest payload accepted, in characters. Leaves headroom
            in the scope for settings and the key.
        prefix: Key prefix for chunks and metadata.
    """

    def __init__(
        self,
        synced: KeyValueStore,
        chunk_size: int = 7000,
        quota: int = 90000,
        prefix: str = "_pagenote_sync_",
    ) -> None:
        self._synced = synced
        self.chunk_size = chunk_size
        self.quota = quota
        self.prefix = prefix

    @property
    def name(self) -> str:
        return "chrome"

    @property
    def meta_key(self) -> str:
        return f"{self.prefix}meta"

    def chunk_key(self, index: int) -> str:
        return f"{self.prefix}{index}"

    def split(self, payload: str) -> list[str]:
        """Cut a payload into chunk-sized pieces (at least one)."""
        return [
            payload[i:i + self.chunk_size]
            for i in range(0, len(payload), self.chunk_size)
        ] or [""]

    def push(self, payload: Payload) -> None:
        if not isinstance(payload, str):
            raise TypeError("ChromeSyncBackend expects an encrypted string payload")
        if len(payload) > self.quota:
            raise QuotaExceeded(
                f"Payload is {len(payload)} chars, limit is {self.quota}"
            )

        chunks = self.split(payload)
        values: dict[str, Any] = {
            self.chunk_key(i): chunk for i, chunk in enumerate(chunks)
        }
        values[self.meta_key] = ChunkMeta(chunks=len(chunks), ts=now_ms()).model_dump()

        try:
            self._synced.replace_prefix(self.prefix, values)
        except StorageQuotaError as exc:
            raise QuotaExceeded(str(exc)) from exc

        logger.info("Pushed %d chunk(s) to synced scope", len(chunks))

    def pull(self) -> Optional[Payload]:
        items = self._synced.get_all()
        raw_meta = items.get(self.meta_key)
        if not raw_meta:
            return None
        try:
            meta = ChunkMeta.model_validate(raw_meta)
        except ValueError as exc:
            logger.warning("Ignoring malformed chunk metadata: %s", exc)
            return None

        data = "".join(
            items.get(self.chunk_key(i)) or "" for i in range(meta.chunks)
        )
        return data or None

    def get_meta(self) -> Optional[ChunkMeta]:
        """Metadata of the last push, if any."""
        raw = self._synced.get(self.meta_key)
        return ChunkMeta.model_validate(raw) if raw else None

    def available(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# HTTP backends
# ---------------------------------------------------------------------------


class _HttpBackend(SyncBackend):
    """Shared request handling for the REST backends."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout

    def _api_call(
        self,
        method: str,
        url: str,
        token: Optional[str] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Make an HTTP call and map failures to SyncError types.

        Raises:
            AuthError: On 401/403.
            TransportError: On network errors and other 4xx/5xx.
        """
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            resp = requests.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{self.name} {method} {url}: {exc}") from exc

        if resp.status_code in (401, 403):
            self._on_auth_failure()
            raise AuthError(
                f"{self.name} {method} {url}: {resp.status_code} {resp.text}"
            )
        if resp.status_code >= 400:
            raise TransportError(
                f"{self.name} {method} {url}: {resp.status_code} {resp.text}"
            )
        return resp

    def _on_auth_failure(self) -> None:
        """Hook for dropping cached credentials."""

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise TransportError(f"Response is not JSON: {exc}") from exc


def env_token_provider(var: str = "PAGENOTE_DRIVE_TOKEN") -> Callable[[], Optional[str]]:
    """Token provider that reads an OAuth access token from the environment."""

    def provide() -> Optional[str]:
        return os.environ.get(var) or None

    return provide


class DriveBackend(_HttpBackend):
    """Google Drive backend storing one file in ``appDataFolder``.

    The access token comes from ``token_provider``, which may run an
    interactive consent flow. The token is cached until the API rejects
    it.

    Args:
        token_provider: Returns an OAuth access token, or None.
        timeout: Per-request timeout in seconds.
    """

    API = "https://www.googleapis.com/drive/v3"
    UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
    MIME_TYPE = "application/json"

    def __init__(
        self,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(timeout)
        self._token_provider = token_provider or env_token_provider()
        self._token: Optional[str] = None

    @property
    def name(self) -> str:
        return "drive"

    def _get_token(self) -> str:
        if self._token is None:
            self._token = self._token_provider()
        if not self._token:
            self._token = None
            raise AuthError("No Google Drive access token available")
        return self._token

    def _on_auth_failure(self) -> None:
        self._token = None

    def _find_file_id(self, token: str) -> Optional[str]:
        resp = self._api_call(
            "GET",
            f"{self.API}/files",
            token=token,
            params={
                "q": f"name='{REMOTE_FILENAME}' and trashed=false",
                "spaces": "appDataFolder",
                "fields": "files(id,name)",
            },
        )
        files = self._json(resp).get("files") or []
        return files[0]["id"] if files else None

    def push(self, payload: Payload) -> None:
        if not isinstance(payload, str):
            raise TypeError("DriveBackend expects an encrypted string payload")
        token = self._get_token()
        file_id = self._find_file_id(token)

        if file_id:
            self._api_call(
                "PATCH",
                f"{self.UPLOAD_API}/files/{file_id}",
                token=token,
                params={"uploadType": "media"},
                headers={"Content-Type": self.MIME_TYPE},
                data=payload.encode("utf-8"),
            )
            logger.info("Updated Drive file %s", file_id)
            return

        metadata = {
            "name": REMOTE_FILENAME,
            "mimeType": self.MIME_TYPE,
            "parents": ["appDataFolder"],
        }
        resp = self._api_call(
            "POST",
            f"{self.UPLOAD_API}/files",
            token=token,
            params={"uploadType": "multipart"},
            files={
                "metadata": (None, json.dumps(metadata), "application/json; charset=UTF-8"),
                "file": (REMOTE_FILENAME, payload.encode("utf-8"), self.MIME_TYPE),
            },
        )
        logger.info("Created Drive file %s", self._json(resp).get("id"))

    def pull(self) -> Optional[Payload]:
        try:
            token = self._get_token()
            file_id = self._find_file_id(token)
            if not file_id:
                return None
            resp = self._api_call(
                "GET",
                f"{self.API}/files/{file_id}",
                token=token,
                params={"alt": "media"},
            )
            return resp.text or None
        except SyncError as exc:
            logger.warning("Drive pull failed: %s", exc)
            return None

    def available(self) -> bool:
        try:
            self._get_token()
        except AuthError:
            return False
        return True


class GistBackend(_HttpBackend):
    """GitHub gist backend holding one encrypted file.

    The gist id is cached in settings. A stale cached id falls back to
    scanning the user's gists for our filename.

    Args:
        settings: Settings store (token and cached gist id).
        timeout: Per-request timeout in seconds.
    """

    API = "https://api.github.com"
    PER_PAGE = 100
    DESCRIPTION = "PageNote web page notes (encrypted)"

    def __init__(self, settings: SettingsStore, timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(timeout)
        self._settings = settings

    @property
    def name(self) -> str:
        return "github"

    def _get_token(self) -> str:
        token = self._settings.load().github_token
        if not token:
            raise AuthError("GitHub token not configured")
        return token

    def _api_call(self, method: str, url: str, token: Optional[str] = None, **kwargs: Any) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("Accept", "application/vnd.github+json")
        return super()._api_call(method, url, token=token, headers=headers, **kwargs)

    def _cache_gist_id(self, gist_id: str) -> None:
        if self._settings.load().github_gist_id != gist_id:
            self._settings.update(github_gist_id=gist_id)

    def _find_gist(self, token: str) -> Optional[str]:
        cached = self._settings.load().github_gist_id
        if cached:
            try:
                resp = self._api_call("GET", f"{self.API}/gists/{cached}", token=token)
                if REMOTE_FILENAME in (self._json(resp).get("files") or {}):
                    return cached
                logger.info("Cached gist %s no longer holds %s, scanning", cached, REMOTE_FILENAME)
            except TransportError as exc:
                logger.info("Cached gist %s unusable, scanning: %s", cached, exc)

        page = 1
        while True:
            resp = self._api_call(
                "GET",
                f"{self.API}/gists",
                token=token,
                params={"per_page": self.PER_PAGE, "page": page},
            )
            gists = self._json(resp) or []
            for gist in gists:
                if REMOTE_FILENAME in (gist.get("files") or {}):
                    self._cache_gist_id(gist["id"])
                    return gist["id"]
            if len(gists) < self.PER_PAGE:
                return None
            page += 1

    def push(self, payload: Payload) -> None:
        if not isinstance(payload, str):
            raise TypeError("GistBackend expects an encrypted string payload")
        token = self._get_token()
        gist_id = self._find_gist(token)

        body = {
            "description": self.DESCRIPTION,
            "public": False,
            "files": {REMOTE_FILENAME: {"content": payload}},
        }

        if gist_id:
            self._api_call("PATCH", f"{self.API}/gists/{gist_id}", token=token, json=body)
            logger.info("Updated gist %s", gist_id)
            return

        resp = self._api_call("POST", f"{self.API}/gists", token=token, json=body)
        created = self._json(resp).get("id")
        if created:
            self._cache_gist_id(created)
        logger.info("Created gist %s", created)

    def pull(self) -> Optional[Payload]:
        try:
            token = self._get_token()
            gist_id = self._find_gist(token)
            if not gist_id:
                return None
            resp = self._api_call("GET", f"{self.API}/gists/{gist_id}", token=token)
            entry = (self._json(resp).get("files") or {}).get(REMOTE_FILENAME)
            if not entry:
                return None
            if entry.get("truncated") and entry.get("raw_url"):
                return self._api_call("GET", entry["raw_url"], token=token).text or None
            return entry.get("content") or None
        except SyncError as exc:
            logger.warning("GitHub pull failed: %s", exc)
            return None

    def available(self) -> bool:
        return bool(self._settings.load().github_token)


# Column names and pinned cell values of the shared table schema.
DEFAULT_FEISHU_COLUMNS = {
    "domain": "域名",
    "path": "页面路径",
    "text": "笔记内容",
    "created": "创建时间",
    "updated": "更新时间",
    "id": "笔记ID",
    "pinned": "已收藏",
}
DEFAULT_PINNED_VALUES = ("是", "否")

ENGLISH_FEISHU_COLUMNS = {
    "domain": "Domain",
    "path": "Path",
    "text": "Note",
    "created": "Created",
    "updated": "Updated",
    "id": "Note ID",
    "pinned": "Pinned",
}
ENGLISH_PINNED_VALUES = ("yes", "no")


def _field_text(value: Any) -> str:
    """Flatten a Bitable cell to text (rich text cells arrive as segment lists)."""
    if value is None:
        return ""
    if isinstance(value, list):
        return "".join(
            seg.get("text", "") if isinstance(seg, dict) else str(seg) for seg in value
        )
    return str(value)


def _field_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class FeishuBackend(_HttpBackend):
    """Feishu Bitable backend: one table row per active note.

    This backend receives the plain document, not ciphertext. Rows are
    human-readable in Feishu; tombstones are not written, so deletions
    propagate by absence.

    Args:
        settings: Settings store holding ``feishu_config``.
        timeout: Per-request timeout in seconds.
        columns: Override for the table's column names, e.g.
            ``ENGLISH_FEISHU_COLUMNS``.
        pinned_values: The (pinned, not pinned) cell values.
    """

    API = "https://open.feishu.cn/open-apis"
    BATCH_SIZE = 500
    encrypted = False

    def __init__(
        self,
        settings: SettingsStore,
        timeout: float = DEFAULT_TIMEOUT,
        columns: Optional[dict[str, str]] = None,
        pinned_values: tuple[str, str] = DEFAULT_PINNED_VALUES,
    ) -> None:
        super().__init__(timeout)
        self._settings = settings
        self.columns = {**DEFAULT_FEISHU_COLUMNS, **(columns or {})}
        self.pinned_yes, self.pinned_no = pinned_values

    @property
    def name(self) -> str:
        return "feishu"

    def _get_config(self) -> FeishuConfig:
        config = self._settings.load().feishu_config
        if config is None:
            raise AuthError("Feishu config not set")
        return config

    def _tenant_token(self, config: FeishuConfig) -> str:
        resp = self._api_call(
            "POST",
            f"{self.API}/auth/v3/tenant_access_token/internal",
            json={"app_id": config.app_id, "app_secret": config.app_secret},
        )
        data = self._json(resp)
        token = data.get("tenant_access_token")
        if data.get("code", 0) != 0 or not token:
            raise AuthError(f"Feishu auth failed: {data.get('msg', 'no token')}")
        return token

    def _records_url(self, config: FeishuConfig) -> str:
        return f"{self.API}/bitable/v1/apps/{config.app_token}/tables/{config.table_id}/records"

    def _bitable_call(self, method: str, url: str, token: str, **kwargs: Any) -> dict[str, Any]:
        data = self._json(self._api_call(method, url, token=token, **kwargs))
        if data.get("code", 0) != 0:
            raise TransportError(f"Feishu {method} {url}: {data.get('code')} {data.get('msg')}")
        return data.get("data") or {}

    def _iter_records(self, token: str, config: FeishuConfig) -> Iterator[dict[str, Any]]:
        page_token: Optional[str] = None
        while True:
            params: dict[str, Any] = {"page_size": self.BATCH_SIZE}
            if page_token:
                params["page_token"] = page_token
            data = self._bitable_call("GET", self._records_url(config), token, params=params)
            yield from data.get("items") or []
            page_token = data.get("page_token") if data.get("has_more") else None
            if not page_token:
                return

    def _to_rows(self, document: Document) -> list[dict[str, Any]]:
        col = self.columns
        rows = []
        for domain, record in document.domains.items():
            for path, page in record.pages.items():
                for note in page.active_notes():
                    rows.append({
                        "fields": {
                            col["domain"]: domain,
                            col["path"]: path,
                            col["text"]: note.text,
                            col["created"]: note.created_at,
                            col["updated"]: note.updated_at,
                            col["id"]: note.id,
                            col["pinned"]: self.pinned_yes if record.pinned else self.pinned_no,
                        }
                    })
        return rows

    def _from_rows(self, items: list[dict[str, Any]]) -> Document:
        col = self.columns
        document = Document()
        taken: set[str] = set()
        for item in items:
            fields = item.get("fields") or {}
            domain = _field_text(fields.get(col["domain"]))
            path = _field_text(fields.get(col["path"]))
            if not domain or not path:
                continue

            record = document.domains.get(domain)
            if record is None:
                record = DomainRecord(
                    pinned=_field_text(fields.get(col["pinned"])) == self.pinned_yes
                )
                document.domains[domain] = record
            page = record.pages.setdefault(path, PageRecord())

            stamp = now_ms()
            note_id = _field_text(fields.get(col["id"])) or new_note_id(taken)
            taken.add(note_id)
            page.notes.append(Note(
                id=note_id,
                text=_field_text(fields.get(col["text"])),
                created_at=_field_int(fields.get(col["created"]), stamp),
                updated_at=_field_int(fields.get(col["updated"]), stamp),
            ))
        return document

    def push(self, payload: Payload) -> None:
        if not isinstance(payload, Document):
            raise TypeError("FeishuBackend expects a plain Document payload")
        config = self._get_config()
        token = self._tenant_token(config)
        url = self._records_url(config)

        existing = [r["record_id"] for r in self._iter_records(token, config) if r.get("record_id")]
        for i in range(0, len(existing), self.BATCH_SIZE):
            self._bitable_call(
                "POST", f"{url}/batch_delete", token,
                json={"records": existing[i:i + self.BATCH_SIZE]},
            )

        rows = self._to_rows(payload)
        for i in range(0, len(rows), self.BATCH_SIZE):
            self._bitable_call(
                "POST", f"{url}/batch_create", token,
                json={"records": rows[i:i + self.BATCH_SIZE]},
            )
        logger.info(
            "Replaced %d Feishu row(s) with %d note(s)", len(existing), len(rows)
        )

    def pull(self) -> Optional[Payload]:
        try:
            config = self._get_config()
            token = self._tenant_token(config)
            items = list(self._iter_records(token, config))
        except SyncError as exc:
            logger.warning("Feishu pull failed: %s", exc)
            return None
        return self._from_rows(items)

    def available(self) -> bool:
        return self._settings.load().feishu_config is not None


def create_backend(
    provider: SyncProvider,
    synced: KeyValueStore,
    settings: SettingsStore,
    timeout: float = DEFAULT_TIMEOUT,
    chunk_size: int = 7000,
    chunk_quota: int = 90000,
    drive_token_provider: Optional[Callable[[], Optional[str]]] = None,
) -> SyncBackend:
    """Factory function to create the backend for one provider.

    Args:
        provider: A concrete provider (not ``all`` or ``none``).
        synced: The synced scope, used by the chunked store.
        settings: Settings store, used for credentials.
        timeout: HTTP timeout in seconds.
        chunk_size: Chunk size for the chunked store.
        chunk_quota: Payload ceiling for the chunked store.
        drive_token_provider: Token source for Google Drive.

    Returns:
        Instantiated SyncBackend.

    Raises:
        ValueError: If the provider is a policy rather than a backend.
    """
    factories: dict[SyncProvider, Callable[[], SyncBackend]] = {
        SyncProvider.CHROME: lambda: ChromeSyncBackend(synced, chunk_size, chunk_quota),
        SyncProvider.DRIVE: lambda: DriveBackend(drive_token_provider, timeout),
        SyncProvider.GITHUB: lambda: GistBackend(settings, timeout),
        SyncProvider.FEISHU: lambda: FeishuBackend(settings, timeout),
    }
    factory = factories.get(provider)
    if not factory:
        raise ValueError(f"Unsupported backend: {provider}")
    return factory()
