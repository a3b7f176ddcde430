"""Client for the Feishu/Lark drive open API."""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from rag_pipeline.core.config import Settings, settings
from rag_pipeline.core.errors import (
    SourceAPIError,
    SourceAuthenticationError,
    UnsupportedDocumentTypeError,
)
from rag_pipeline.pipelines.models import DocumentRef

AUTH_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
FILES_PATH = "/open-apis/drive/v1/files"

# Content endpoint per document type
CONTENT_PATHS = {
    "doc": "/open-apis/doc/v2/{doc_id}/content",
    "docx": "/open-apis/docx/v1/documents/{doc_id}/raw_content",
    "sheet": "/open-apis/sheets/v2/spreadsheets/{doc_id}/metainfo",
}
DOCUMENT_TYPES = tuple(CONTENT_PATHS)
FOLDER_TYPE = "folder"

TOKEN_TTL_SECONDS = 2 * 60 * 60
TOKEN_REFRESH_MARGIN_SECONDS = 5 * 60

# API codes meaning the tenant access token is invalid or expired
TOKEN_EXPIRED_CODES = frozenset({99991661, 99991663, 99991668})

ENUMERATION_ERRORS = (SourceAPIError, aiohttp.ClientError, asyncio.TimeoutError)


class FeishuDriveClient:
    """Lists drive folders and fetches document content.

    Authentication expiry is the only retried failure: a rejected token is
    refreshed and the request repeated exactly once.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = config or settings
        self._base_url = self._settings.source_base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=self._settings.source_timeout)
        self._session = session
        self._owns_session = session is None
        self._logger = logger or logging.getLogger(__name__)

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def initialize(self) -> None:
        await self.authenticate()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _token_expired(self) -> bool:
        # Refresh a few minutes before the token actually expires
        return time.monotonic() >= self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS

    def _invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = 0.0

    async def authenticate(self) -> str:
        """Obtain a tenant access token."""
        secret = self._settings.source_app_secret
        body = {
            "app_id": self._settings.source_app_id,
            "app_secret": secret.get_secret_value() if secret else None,
        }
        self._logger.info("Authenticating with drive API")
        try:
            async with self.session.post(
                f"{self._base_url}{AUTH_PATH}", json=body, timeout=self._timeout
            ) as response:
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise SourceAuthenticationError(f"Drive authentication failed: {e}") from e

        code = payload.get("code")
        if code != 0 or not payload.get("tenant_access_token"):
            raise SourceAuthenticationError(
                f"Drive authentication failed: {payload.get('msg')}", code=code
            )

        self._access_token = payload["tenant_access_token"]
        ttl = payload.get("expire") or TOKEN_TTL_SECONDS
        self._token_expires_at = time.monotonic() + ttl
        self._logger.info("Authenticated with drive API")
        return self._access_token

    async def _get_token(self) -> str:
        if not self._access_token or self._token_expired():
            return await self.authenticate()
        return self._access_token

    async def _request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"

        for attempt in range(2):
            headers = {"Authorization": f"Bearer {await self._get_token()}"}
            async with self.session.request(
                method, url, params=params, headers=headers, timeout=self._timeout
            ) as response:
                status = response.status
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = {}

            if not isinstance(payload, dict):
                payload = {}
            code = payload.get("code", 0)

            if status == 401 or code in TOKEN_EXPIRED_CODES:
                if attempt == 0:
                    self._logger.info(f"Access token rejected for {path}, re-authenticating")
                    self._invalidate_token()
                    continue
                raise SourceAuthenticationError(
                    f"Access token rejected for {path}", code=code, status=status
                )
            if status >= 400:
                raise SourceAPIError(
                    f"HTTP {status} for {path}: {payload.get('msg', '')}", code=code, status=status
                )
            if code != 0:
                raise SourceAPIError(
                    f"Request to {path} failed: {payload.get('msg')}", code=code, status=status
                )
            return payload.get("data") or {}

        raise SourceAuthenticationError(f"Access token rejected for {path}")

    async def list_files(self, folder_token: str) -> List[DocumentRef]:
        """List every file directly inside a folder, following pagination."""
        files: List[DocumentRef] = []
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {
                "folder_token": folder_token,
                "page_size": self._settings.source_page_size,
            }
            if page_token:
                params["page_token"] = page_token

            data = await self._request("GET", FILES_PATH, params=params)
            page = [DocumentRef.model_validate(item) for item in data.get("files") or []]
            files.extend(page)

            page_token = data.get("next_page_token")
            self._logger.debug(
                f"Fetched {len(page)} entries from folder {folder_token}, "
                f"has_more: {data.get('has_more')}"
            )
            if not data.get("has_more") or not page_token:
                break

        return files

    async def list_documents(self, folder_token: str) -> List[DocumentRef]:
        """Supported documents directly inside a folder."""
        return [ref for ref in await self.list_files(folder_token) if ref.type in DOCUMENT_TYPES]

    async def list_subfolders(self, folder_token: str) -> List[DocumentRef]:
        return [ref for ref in await self.list_files(folder_token) if ref.type == FOLDER_TYPE]

    async def list_documents_recursive(self, folder_token: str) -> List[DocumentRef]:
        """Depth-first listing of every supported document below a folder.

        A subfolder that cannot be listed is logged and skipped; a failure on
        ``folder_token`` itself propagates.
        """
        entries = await self.list_files(folder_token)
        documents = [ref for ref in entries if ref.type in DOCUMENT_TYPES]

        for folder in (ref for ref in entries if ref.type == FOLDER_TYPE):
            try:
                documents.extend(await self.list_documents_recursive(folder.token))
            except ENUMERATION_ERRORS as e:
                self._logger.warning(f"Skipping folder {folder.token} ({folder.name}): {e}")

        self._logger.info(f"Found {len(documents)} documents under folder {folder_token}")
        return documents

    async def get_content(self, doc_id: str, doc_type: str) -> Dict[str, Any]:
        """Fetch the raw content payload of a document."""
        path = CONTENT_PATHS.get(doc_type)
        if path is None:
            raise UnsupportedDocumentTypeError(doc_type)
        data = await self._request("GET", path.format(doc_id=doc_id))
        self._logger.debug(f"Fetched content for {doc_type} {doc_id}")
        return data

    async def test_connection(self) -> bool:
        try:
            await self.authenticate()
            return True
        except SourceAuthenticationError as e:
            self._logger.error(f"Drive connection test failed: {e}")
            return False

    async def health_check(self) -> Dict[str, Any]:
        if await self.test_connection():
            return {"status": "healthy", "base_url": self._base_url}
        return {"status": "unhealthy", "base_url": self._base_url}
