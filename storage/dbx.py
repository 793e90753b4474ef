"""Dropbox storage driver.

Authorization uses the no-redirect OAuth 2.0 flow with PKCE and an offline
refresh token, so the app secret is optional and the session survives a
restart.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, List, Optional

import dropbox as dropbox_sdk
from dropbox.exceptions import ApiError, AuthError, InternalServerError, RateLimitError
from dropbox.files import FileMetadata, FileStatus, SearchOptions, WriteMode

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
    guess_mime_type,
)
from .credentials import CredentialStore
from utils.retry import retry_on_transient_error, is_transient_network_error

if TYPE_CHECKING:
    from cloudunify.config import DropboxConfig

logger = logging.getLogger(__name__)

TOKEN_KEY = "dropbox_token"


# ---------------------------------------------------------------------------
# Dropbox Retry Configuration
# ---------------------------------------------------------------------------

def _is_retryable_dropbox_error(exc: Exception) -> bool:
    """Determine if a Dropbox API error should be retried."""
    if isinstance(exc, AuthError):
        return False
    if isinstance(exc, (RateLimitError, InternalServerError)):
        return True
    if isinstance(exc, ApiError):
        return False
    return is_transient_network_error(exc)


def _with_retry(func):
    """Decorator to add retry logic and error translation to Dropbox API calls."""
    retrying = retry_on_transient_error(
        is_retryable=_is_retryable_dropbox_error,
        max_retries=5,
        base_delay=1.0,
        max_delay=60.0,
    )(func)

    def wrapper(*args, **kwargs):
        try:
            return retrying(*args, **kwargs)
        except AuthError as e:
            raise StorageError(f"Dropbox rejected the access token: {e.error}",
                               auth_failed=True)
        except ApiError as e:
            summary = getattr(e, 'user_message_text', None) or str(e.error)
            raise StorageError(f"Dropbox API error: {summary}")
    return wrapper


class DropboxDriver(StorageDriver):
    """Storage driver for Dropbox (HTTP API v2 via the official SDK)."""

    provider_id = ProviderId.DROPBOX.value
    MAX_UPLOAD_SIZE = 150 * 1024 * 1024  # files_upload single-call limit

    def __init__(self, config: "DropboxConfig", store: CredentialStore,
                 download_dir: str = "downloads",
                 prompt: AuthPrompt = default_prompt) -> None:
        super().__init__(download_dir=download_dir)
        self.config = config
        self.store = store
        self.prompt = prompt
        self.client: Optional[dropbox_sdk.Dropbox] = None

    def missing_configuration(self) -> List[str]:
        return self.config.missing_fields()

    def _build_client(self, access_token: Optional[str],
                      refresh_token: Optional[str]) -> dropbox_sdk.Dropbox:
        return dropbox_sdk.Dropbox(
            oauth2_access_token=access_token,
            oauth2_refresh_token=refresh_token,
            app_key=self.config.app_key,
            app_secret=self.config.app_secret or None,
        )

    @_with_retry
    def _log_account(self) -> None:
        account = self.client.users_get_current_account()
        logger.info(f"Dropbox: signed in as {account.name.display_name}")

    # =========================================================================
    # Session
    # =========================================================================

    def _restore(self) -> bool:
        stored = self.store.get(TOKEN_KEY)
        if not stored:
            return False

        try:
            token_data = json.loads(stored)
        except json.JSONDecodeError as e:
            raise StorageError(f"Stored Dropbox token is invalid: {e}", auth_failed=True)

        if not token_data.get('refresh_token') and not token_data.get('access_token'):
            raise StorageError("Stored Dropbox token is empty", auth_failed=True)

        self.client = self._build_client(token_data.get('access_token'),
                                         token_data.get('refresh_token'))
        self._log_account()
        return True

    def _authorize(self) -> None:
        auth_flow = dropbox_sdk.DropboxOAuth2FlowNoRedirect(
            self.config.app_key,
            consumer_secret=self.config.app_secret or None,
            token_access_type='offline',
            use_pkce=True,
        )
        authorize_url = auth_flow.start()

        auth_code = self.prompt(
            authorize_url,
            "Authorize CloudUnify in the browser, then copy the code Dropbox shows.",
        )
        if not auth_code:
            raise StorageError("No authorization code provided")

        oauth_result = auth_flow.finish(auth_code.strip())
        self.client = self._build_client(oauth_result.access_token,
                                         oauth_result.refresh_token)
        self.store.set(TOKEN_KEY, json.dumps({
            "access_token": oauth_result.access_token,
            "refresh_token": oauth_result.refresh_token,
        }))
        self._log_account()

    @_with_retry
    def _revoke(self) -> None:
        if self.client is not None:
            self.client.auth_token_revoke()

    def _forget(self) -> None:
        if self.client is not None:
            self.client.close()
        self.client = None
        self.store.remove(TOKEN_KEY)

    # =========================================================================
    # Operations
    # =========================================================================

    @_with_retry
    def _fetch_quota(self) -> Quota:
        usage = self.client.users_get_space_usage()
        allocation = usage.allocation
        if allocation.is_individual():
            allocated = allocation.get_individual().allocated
        elif allocation.is_team():
            allocated = allocation.get_team().allocated
        else:
            allocated = 0
        return Quota.from_usage(allocated, usage.used)

    def _to_file_info(self, entry: FileMetadata) -> FileInfo:
        return self._file_info(
            id=entry.id,
            name=entry.name,
            size=entry.size,
            modified=entry.client_modified or entry.server_modified,
            mime_type=guess_mime_type(entry.name),
            web_link=entry.path_display,
        )

    @_with_retry
    def _list_folder(self, limit: int, cursor: Optional[str] = None) -> Any:
        """List the root folder with pagination support."""
        if cursor:
            return self.client.files_list_folder_continue(cursor)
        # Dropbox uses "" for root
        return self.client.files_list_folder("", recursive=False, limit=limit)

    def _list(self, max_results: int) -> List[FileInfo]:
        results: List[FileInfo] = []
        cursor = None
        has_more = True

        while has_more and len(results) < max_results:
            page = self._list_folder(min(max(max_results, 1), 2000), cursor)
            for entry in page.entries:
                if isinstance(entry, FileMetadata):
                    results.append(self._to_file_info(entry))
            cursor, has_more = page.cursor, page.has_more

        return results[:max_results]

    @_with_retry
    def _search(self, query: str) -> List[FileInfo]:
        result = self.client.files_search_v2(
            query,
            options=SearchOptions(
                path="",
                max_results=self.SEARCH_LIMIT,
                file_status=FileStatus.active,
                filename_only=True,
            ),
        )

        files = []
        for match in result.matches:
            if not match.metadata.is_metadata():
                continue
            entry = match.metadata.get_metadata()
            if isinstance(entry, FileMetadata):
                files.append(self._to_file_info(entry))
        return files

    @_with_retry
    def _upload(self, source: UploadSource, progress: ProgressReporter) -> str:
        with open(source.path, 'rb') as f:
            data = f.read()

        metadata = self.client.files_upload(
            data,
            "/" + source.name,
            mode=WriteMode.add,
            autorename=True,
            mute=False,
        )
        return metadata.id

    @_with_retry
    def _download(self, file_id: str, local_path: str) -> None:
        self.client.files_download_to_file(local_path, file_id)
