"""Google Drive storage driver."""

import json
import logging
from typing import TYPE_CHECKING, Dict, List, Optional

import requests
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload

from .base import (
    FileInfo,
    ProgressReporter,
    ProviderId,
    Quota,
    StorageDriver,
    StorageError,
    UploadSource,
)
from .credentials import CredentialStore
from utils.retry import (
    retry_on_transient_error,
    is_transient_network_error,
    TRANSIENT_HTTP_STATUS_CODES,
)

if TYPE_CHECKING:
    from cloudunify.config import GoogleConfig

logger = logging.getLogger(__name__)

TOKEN_KEY = "google_token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id, name, mimeType, size, modifiedTime, webViewLink"
UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024


# ---------------------------------------------------------------------------
# Google Drive Retry Configuration
# ---------------------------------------------------------------------------

def _is_retryable_gdrive_error(exc: Exception) -> bool:
    """Determine if a Google Drive API error should be retried."""
    if isinstance(exc, HttpError):
        return exc.resp.status in TRANSIENT_HTTP_STATUS_CODES
    return is_transient_network_error(exc)


_gdrive_retry = retry_on_transient_error(
    is_retryable=_is_retryable_gdrive_error,
    max_retries=5,
    base_delay=1.0,
    max_delay=60.0,
)


def _translate_errors(func):
    """Convert credential failures into StorageError(auth_failed=True)."""
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except HttpError as e:
            if e.resp.status == 401:
                raise StorageError("Google Drive rejected the access token",
                                   auth_failed=True)
            raise StorageError(f"Google Drive API error {e.resp.status}: {_reason(e)}")
        except RefreshError as e:
            raise StorageError(f"Google Drive token refresh failed: {e}",
                               auth_failed=True)
    return wrapper


def _reason(exc: HttpError) -> str:
    try:
        return exc._get_reason()
    except Exception:
        return str(exc)


@_translate_errors
def _execute_with_retry(request):
    """Execute a Google Drive API request with automatic retry."""
    return _gdrive_retry(request.execute)()


@_translate_errors
def _next_chunk_with_retry(request):
    """Send the next chunk of a resumable upload with automatic retry."""
    return _gdrive_retry(request.next_chunk)()


@_translate_errors
def _download_with_retry(request, destination) -> None:
    """Download a file from Google Drive with automatic retry."""
    downloader = MediaIoBaseDownload(destination, request)
    next_chunk = _gdrive_retry(downloader.next_chunk)
    done = False
    while not done:
        _, done = next_chunk()


def _escape_query_value(value: str) -> str:
    """Escape a value for use in Google Drive API query strings."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GDriveDriver(StorageDriver):
    """Storage driver for Google Drive (Drive API v3).

    Uses the installed-app OAuth flow. The authorized user credential is kept
    in the credential store as JSON and refreshed on restore when expired.
    """

    provider_id = ProviderId.GOOGLE.value
    MAX_UPLOAD_SIZE = 5 * 1024 ** 4  # Drive's per-file limit: 5 TB

    def __init__(self, config: "GoogleConfig", store: CredentialStore,
                 download_dir: str = "downloads") -> None:
        super().__init__(download_dir=download_dir)
        self.config = config
        self.store = store
        self.creds: Optional[Credentials] = None
        self.service = None

    def missing_configuration(self) -> List[str]:
        return self.config.missing_fields()

    def _client_config(self) -> Dict:
        return {
            "installed": {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": "https://oauth2.googleapis.com/token",
                "redirect_uris": ["http://localhost"],
            }
        }

    def _use_credentials(self, creds: Credentials) -> None:
        self.creds = creds
        self.service = build('drive', 'v3', credentials=creds, cache_discovery=False)
        self.store.set(TOKEN_KEY, creds.to_json())

    # =========================================================================
    # Session
    # =========================================================================

    def _restore(self) -> bool:
        token_json = self.store.get(TOKEN_KEY)
        if not token_json:
            return False

        try:
            creds = Credentials.from_authorized_user_info(
                json.loads(token_json), list(self.config.scopes)
            )
        except (ValueError, KeyError) as e:
            raise StorageError(f"Stored Google token is invalid: {e}", auth_failed=True)

        if not creds.valid:
            if not (creds.expired and creds.refresh_token):
                raise StorageError("Stored Google token expired", auth_failed=True)
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise StorageError(f"Google token refresh failed: {e}", auth_failed=True)

        self._use_credentials(creds)
        return True

    def _authorize(self) -> None:
        flow = InstalledAppFlow.from_client_config(self._client_config(),
                                                   list(self.config.scopes))
        creds = flow.run_local_server(port=0)
        self._use_credentials(creds)

    def _revoke(self) -> None:
        token = self.creds.token if self.creds else None
        if not token:
            return
        response = requests.post(
            REVOKE_URL,
            params={'token': token},
            headers={'content-type': 'application/x-www-form-urlencoded'},
            timeout=20,
        )
        if response.status_code != 200:
            raise StorageError(f"Token revoke returned HTTP {response.status_code}")

    def _forget(self) -> None:
        self.creds = None
        self.service = None
        self.store.remove(TOKEN_KEY)

    # =========================================================================
    # Operations
    # =========================================================================

    def _fetch_quota(self) -> Quota:
        about = _execute_with_retry(self.service.about().get(fields="storageQuota"))
        quota = about.get('storageQuota', {})
        # 'limit' is absent for unlimited plans; that reads as total 0
        return Quota.from_usage(quota.get('limit'), quota.get('usage'))

    def _to_file_info(self, item: Dict) -> FileInfo:
        return self._file_info(
            id=item['id'],
            name=item['name'],
            size=item.get('size'),
            modified=item.get('modifiedTime'),
            mime_type=item.get('mimeType'),
            web_link=item.get('webViewLink'),
        )

    def _list(self, max_results: int) -> List[FileInfo]:
        results: List[FileInfo] = []
        page_token = None

        while len(results) < max_results:
            response = _execute_with_retry(self.service.files().list(
                q=f"trashed=false and mimeType!='{FOLDER_MIME_TYPE}'",
                pageSize=min(max_results - len(results), 1000),
                orderBy="modifiedTime desc",
                fields=f"nextPageToken, files({FILE_FIELDS})",
                pageToken=page_token,
            ))

            results.extend(self._to_file_info(item) for item in response.get('files', []))

            page_token = response.get('nextPageToken')
            if not page_token:
                break

        return results[:max_results]

    def _search(self, query: str) -> List[FileInfo]:
        escaped = _escape_query_value(query)
        response = _execute_with_retry(self.service.files().list(
            q=f"name contains '{escaped}' and trashed=false and mimeType!='{FOLDER_MIME_TYPE}'",
            pageSize=self.SEARCH_LIMIT,
            fields=f"files({FILE_FIELDS})",
        ))
        return [self._to_file_info(item) for item in response.get('files', [])]

    def _upload(self, source: UploadSource, progress: ProgressReporter) -> str:
        media = MediaFileUpload(
            source.path,
            mimetype=source.mime_type or 'application/octet-stream',
            chunksize=UPLOAD_CHUNK_SIZE,
            resumable=True,
        )
        request = self.service.files().create(
            body={'name': source.name},
            media_body=media,
            fields='id',
        )

        response = None
        while response is None:
            status, response = _next_chunk_with_retry(request)
            if status:
                progress(status.progress() * 100)

        return response['id']

    def _download(self, file_id: str, local_path: str) -> None:
        request = self.service.files().get_media(fileId=file_id)
        with open(local_path, 'wb') as f:
            _download_with_retry(request, f)
