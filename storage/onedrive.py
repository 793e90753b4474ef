"""OneDrive storage driver (Microsoft Graph v1.0 over plain HTTP).

Authorization is the Microsoft identity platform authorization-code flow
with PKCE. The refresh token is stored so later sessions renew the access
token silently.
"""

import base64
import hashlib
import json
import logging
import secrets
import time
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import parse_qs, quote, urlencode, urlparse

import requests

from .base import (
    AuthPrompt,
    FileInfo,
    ProgressReporter,
    ProviderId,
    Quota,
    StorageDriver,
    StorageError,
    UploadSource,
    default_prompt,
)
from .credentials import CredentialStore
from utils.retry import retry_on_transient_error, TRANSIENT_HTTP_STATUS_CODES

if TYPE_CHECKING:
    from cloudunify.config import OneDriveConfig

logger = logging.getLogger(__name__)

TOKEN_KEY = "onedrive_token"
GRAPH_ROOT = "https://graph.microsoft.com/v1.0"
AUTH_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"
TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
ITEM_FIELDS = "id,name,size,lastModifiedDateTime,file,webUrl"
REQUEST_TIMEOUT = 30
TRANSFER_TIMEOUT = 180
# Renew a little before the token actually expires
EXPIRY_MARGIN = 60


def _is_retryable_graph_error(exc: Exception) -> bool:
    """Determine if a Graph request failure should be retried."""
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return response is not None and response.status_code in TRANSIENT_HTTP_STATUS_CODES
    return isinstance(exc, (requests.ConnectionError, requests.Timeout))


_graph_retry = retry_on_transient_error(
    is_retryable=_is_retryable_graph_error,
    max_retries=5,
    base_delay=1.0,
    max_delay=60.0,
)


def _graph_error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] if response.text else ""
    error = payload.get('error', {}) if isinstance(payload, dict) else {}
    if isinstance(error, dict):
        return error.get('message') or error.get('code') or ""
    # Token endpoint errors use a flat shape
    return payload.get('error_description') or str(error)


def _pkce_pair() -> tuple:
    verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(verifier.encode('ascii')).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b'=').decode('ascii')
    return verifier, challenge


def _extract_code(pasted: str) -> str:
    """Accept either the bare code or the whole redirect URL."""
    pasted = pasted.strip()
    if "code=" not in pasted:
        return pasted
    query = urlparse(pasted).query or pasted.split("?", 1)[-1]
    return parse_qs(query).get('code', [""])[0]


class OneDriveDriver(StorageDriver):
    """Storage driver for OneDrive personal and business drives."""

    provider_id = ProviderId.ONEDRIVE.value
    MAX_UPLOAD_SIZE = 4 * 1024 * 1024 - 1  # simple upload takes files under 4 MiB

    def __init__(self, config: "OneDriveConfig", store: CredentialStore,
                 download_dir: str = "downloads",
                 prompt: AuthPrompt = default_prompt,
                 session: Optional[requests.Session] = None) -> None:
        super().__init__(download_dir=download_dir)
        self.config = config
        self.store = store
        self.prompt = prompt
        self.http = session or requests.Session()
        self._token: Dict[str, Any] = {}

    def missing_configuration(self) -> List[str]:
        return self.config.missing_fields()

    @property
    def _scope(self) -> str:
        return " ".join(self.config.scopes)

    @property
    def _token_url(self) -> str:
        return TOKEN_URL_TEMPLATE.format(tenant=self.config.tenant)

    # =========================================================================
    # Tokens
    # =========================================================================

    def _token_request(self, data: Dict[str, str]) -> None:
        data = dict(data, client_id=self.config.client_id, scope=self._scope)
        if self.config.client_secret:
            data['client_secret'] = self.config.client_secret

        response = self._send("POST", self._token_url, authorized=False, data=data)
        if response.status_code in (400, 401):
            raise StorageError(
                f"Microsoft sign-in rejected the request: {_graph_error_message(response)}",
                auth_failed=True,
            )
        if response.status_code >= 400:
            raise StorageError(f"Token endpoint returned HTTP {response.status_code}")

        payload = response.json()
        if not payload.get('access_token'):
            raise StorageError("Token endpoint did not return an access token")

        self._token = {
            'access_token': payload['access_token'],
            # Microsoft may omit a new refresh token on renewal; keep the old one
            'refresh_token': payload.get('refresh_token') or self._token.get('refresh_token'),
            'expires_at': time.time() + float(payload.get('expires_in', 3600)) - EXPIRY_MARGIN,
        }
        self.store.set(TOKEN_KEY, json.dumps(self._token))

    def _ensure_token_fresh(self) -> str:
        if not self._token:
            raise StorageError("Not signed in to OneDrive", auth_failed=True)
        if time.time() >= self._token.get('expires_at', 0):
            refresh_token = self._token.get('refresh_token')
            if not refresh_token:
                raise StorageError("OneDrive session expired", auth_failed=True)
            self._token_request({'grant_type': 'refresh_token',
                                 'refresh_token': refresh_token})
        return self._token['access_token']

    # =========================================================================
    # HTTP
    # =========================================================================

    @_graph_retry
    def _send(self, method: str, url: str, authorized: bool = True,
              **kwargs: Any) -> requests.Response:
        headers = dict(kwargs.pop('headers', {}))
        if authorized:
            headers['Authorization'] = f"Bearer {self._ensure_token_fresh()}"
        kwargs.setdefault('timeout', REQUEST_TIMEOUT)
        response = self.http.request(method, url, headers=headers, **kwargs)
        if response.status_code in TRANSIENT_HTTP_STATUS_CODES:
            response.raise_for_status()
        return response

    def _graph(self, method: str, path: str, context: str, **kwargs: Any) -> requests.Response:
        url = path if path.startswith("https://") else f"{GRAPH_ROOT}{path}"
        try:
            response = self._send(method, url, **kwargs)
        except requests.HTTPError as e:
            raise StorageError(f"Graph API unavailable while attempting to {context}: {e}")
        self._raise_for_status(response, context)
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response, context: str) -> None:
        if response.status_code == 401:
            raise StorageError(f"Auth failed while attempting to {context}.", auth_failed=True)
        if response.status_code == 404:
            raise StorageError(f"Item not found while attempting to {context}.")
        if response.status_code >= 400:
            raise StorageError(
                f"Graph API error {response.status_code} while attempting to {context}: "
                f"{_graph_error_message(response)}"
            )

    # =========================================================================
    # Session
    # =========================================================================

    def _restore(self) -> bool:
        stored = self.store.get(TOKEN_KEY)
        if not stored:
            return False
        try:
            token = json.loads(stored)
        except json.JSONDecodeError as e:
            raise StorageError(f"Stored OneDrive token is invalid: {e}", auth_failed=True)
        if not isinstance(token, dict) or not token.get('access_token'):
            raise StorageError("Stored OneDrive token is incomplete", auth_failed=True)

        self._token = token
        self._ensure_token_fresh()
        return True

    def _authorize(self) -> None:
        verifier, challenge = _pkce_pair()
        state = uuid.uuid4().hex
        params = {
            'client_id': self.config.client_id,
            'response_type': 'code',
            'redirect_uri': self.config.redirect_uri,
            'response_mode': 'query',
            'scope': self._scope,
            'state': state,
            'code_challenge': challenge,
            'code_challenge_method': 'S256',
        }
        auth_url = f"{AUTH_URL_TEMPLATE.format(tenant=self.config.tenant)}?{urlencode(params)}"

        code = _extract_code(self.prompt(
            auth_url,
            "Sign in to Microsoft in the browser, then paste the URL you were "
            "redirected to (or just its 'code' parameter).",
        ) or "")
        if not code:
            raise StorageError("No authorization code provided")

        self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.config.redirect_uri,
            'code_verifier': verifier,
        })

    def _revoke(self) -> None:
        # Graph offers no per-token revocation for delegated tokens; dropping
        # the refresh token locally ends the session
        logger.debug("OneDrive: no remote revoke endpoint, clearing local tokens")

    def _forget(self) -> None:
        self._token = {}
        self.store.remove(TOKEN_KEY)

    # =========================================================================
    # Operations
    # =========================================================================

    def _fetch_quota(self) -> Quota:
        drive = self._graph("GET", "/me/drive", "read drive quota").json()
        quota = drive.get('quota', {})
        result = Quota.from_usage(quota.get('total'), quota.get('used'))
        remaining = quota.get('remaining')
        if remaining is not None and remaining != result.free:
            # 'remaining' also subtracts deleted items; free stays total - used
            logger.debug(f"OneDrive reports remaining={remaining}, using free={result.free}")
        return result

    def _to_file_info(self, item: Dict) -> FileInfo:
        return self._file_info(
            id=item['id'],
            name=item['name'],
            size=item.get('size'),
            modified=item.get('lastModifiedDateTime'),
            mime_type=item.get('file', {}).get('mimeType'),
            web_link=item.get('webUrl'),
        )

    def _collect(self, url: str, params: Optional[Dict], limit: int,
                 context: str) -> List[FileInfo]:
        results: List[FileInfo] = []
        while url and len(results) < limit:
            payload = self._graph("GET", url, context, params=params).json()
            results.extend(self._to_file_info(item) for item in payload.get('value', [])
                           if 'file' in item)
            # nextLink already carries the query string
            url, params = payload.get('@odata.nextLink'), None
        return results[:limit]

    def _list(self, max_results: int) -> List[FileInfo]:
        params = {'$top': max(1, min(max_results, 999)), '$select': ITEM_FIELDS}
        return self._collect("/me/drive/root/children", params, max_results, "list files")

    def _search(self, query: str) -> List[FileInfo]:
        # OData string literal: single quotes are doubled
        literal = quote(query.replace("'", "''"), safe="")
        params = {'$top': self.SEARCH_LIMIT, '$select': ITEM_FIELDS}
        return self._collect(f"/me/drive/root/search(q='{literal}')", params,
                             self.SEARCH_LIMIT, "search files")

    def _upload(self, source: UploadSource, progress: ProgressReporter) -> str:
        with open(source.path, 'rb') as f:
            data = f.read()

        response = self._graph(
            "PUT",
            f"/me/drive/root:/{quote(source.name)}:/content",
            f"upload {source.name}",
            params={'@microsoft.graph.conflictBehavior': 'rename'},
            headers={'Content-Type': source.mime_type or 'application/octet-stream'},
            data=data,
            timeout=TRANSFER_TIMEOUT,
        )
        return response.json()['id']

    def _download(self, file_id: str, local_path: str) -> None:
        response = self._graph(
            "GET",
            f"/me/drive/items/{quote(file_id, safe='!')}/content",
            "download file",
            stream=True,
            timeout=TRANSFER_TIMEOUT,
        )
        with open(local_path, 'wb') as f:
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                if chunk:
                    f.write(chunk)
