#!/usr/bin/env python3
"""Microsoft Graph (OneDrive) implementation of CloudClient."""

import logging
import re
import time
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

import certifi
import requests
from dateutil.parser import isoparse

from ..errors import (
    AuthError,
    AmbiguousSyncRootError,
    ConflictError,
    NetworkError,
    SyncRootNotFoundError,
    map_http_error,
)
from ..models import SYNC_ROOT_NAME, Folder, Quota, Replica
from ..path_utils import SecurityError
from ..retry import retry_on_failure
from .base import Capabilities, CloudClient


logger = logging.getLogger(__name__)


class OneDriveClient(CloudClient):
    """Client for one Microsoft OneDrive account."""

    provider = "Microsoft"

    TOKEN_URL = "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
    API_BASE = "https://graph.microsoft.com/v1.0"

    # Public client identifier for OneDrive Consumer (personal accounts)
    DEFAULT_CLIENT_ID = "df3a0308-c302-4962-b115-08bd59526bc5"

    # Graph accepts simple PUT uploads up to 4 MiB; larger files need an
    # upload session with chunks that are multiples of 320 KiB.
    SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
    UPLOAD_CHUNK_SIZE = 32 * 320 * 1024
    REQUEST_TIMEOUT = 60

    def __init__(
        self,
        account_id: str,
        token_data: Dict[str, Any],
        client_id: Optional[str] = None,
        sync_folder_name: str = SYNC_ROOT_NAME,
        capabilities: Optional[Capabilities] = None,
        on_token_refresh: Optional[Callable[[Dict[str, Any]], None]] = None,
        retry_attempts: int = 5,
    ):
        """Initialize OneDrive client.

        Args:
            account_id: Email of the account this client is bound to
            token_data: Token data produced by the (external) auth flow
            client_id: Microsoft application client ID (default public ID)
            sync_folder_name: Name of the sync root folder in the drive root
            capabilities: Capability overrides (max object size from config)
            on_token_refresh: Called with new token data after a refresh
            retry_attempts: Attempts for requests failing transiently
        """
        super().__init__(account_id, capabilities)
        self.client_id = client_id or self.DEFAULT_CLIENT_ID
        self.token_data = token_data or {}
        self.sync_folder_name = sync_folder_name
        self.on_token_refresh = on_token_refresh
        self.retry_attempts = retry_attempts
        self._sync_folder_id: Optional[str] = None
        self._session = requests.Session()
        self._session.verify = certifi.where()  # Explicit certificate validation

    def _sanitize_for_log(self, text: str) -> str:
        """Remove tokens and codes from log output."""
        text = re.sub(r'(access_token|refresh_token|code)["\']?\s*[:=]\s*["\']?[\w\-\.]+',
                     r'\1=***REDACTED***', text, flags=re.IGNORECASE)
        text = re.sub(r'Bearer\s+[\w\-\.]+', 'Bearer ***REDACTED***', text, flags=re.IGNORECASE)
        return text

    def refresh_token(self) -> Dict[str, Any]:
        """Refresh access token using refresh token.

        Returns:
            New token data
        """
        if 'refresh_token' not in self.token_data:
            raise AuthError(f"No refresh token available for {self.account_id}")

        logger.info(f"Refreshing access token for {self.account_id}")

        data = {
            'client_id': self.client_id,
            'refresh_token': self.token_data['refresh_token'],
            'grant_type': 'refresh_token',
        }

        try:
            response = requests.post(self.TOKEN_URL, data=data, verify=certifi.where(), timeout=30)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Token refresh failed: {self._sanitize_for_log(str(e))}", cause=e)

        if response.status_code != 200:
            logger.error(f"Token refresh failed with status {response.status_code}")
            logger.debug(f"Response: {self._sanitize_for_log(response.text)}")
            raise AuthError(
                f"Token refresh failed for {self.account_id}",
                details={'status_code': response.status_code},
            )

        self.token_data = response.json()
        self.token_data['expires_at'] = time.time() + self.token_data.get('expires_in', 3600)
        if self.on_token_refresh:
            self.on_token_refresh(self.token_data)
        logger.info("Successfully refreshed access token")
        return self.token_data

    def _ensure_token(self) -> None:
        """Ensure we have a valid access token."""
        if not self.token_data:
            raise AuthError(f"Not authenticated: no token for {self.account_id}")

        # Refresh token if expired or about to expire (5 min buffer)
        if self.token_data.get('expires_at', 0) < time.time() + 300:
            self.refresh_token()

    def _auth_headers(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        self._ensure_token()
        headers = dict(headers or {})
        headers['Authorization'] = f"Bearer {self.token_data['access_token']}"
        return headers

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request and map failures onto the cdsync error taxonomy."""
        kwargs.setdefault('timeout', self.REQUEST_TIMEOUT)
        try:
            response = self._session.request(method, url, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise NetworkError(f"{method} {url} failed: {e}", cause=e)

        if response.status_code >= 400:
            raise self._error_from_response(response)
        return response

    @staticmethod
    def _error_from_response(response: requests.Response):
        reason = None
        message = None
        try:
            error = response.json().get('error', {})
            reason = error.get('code')
            message = error.get('message')
        except ValueError:
            pass
        details = {}
        if response.headers.get('Retry-After'):
            details['retry_after'] = response.headers['Retry-After']
        return map_http_error(response.status_code, reason, message, details=details)

    @retry_on_failure(max_retries=5, attempts_attr='retry_attempts')
    def _api_request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        """Make authenticated API request.

        Args:
            method: HTTP method
            endpoint: API endpoint (without base URL)
            **kwargs: Additional request arguments

        Returns:
            Response object
        """
        headers = self._auth_headers(kwargs.pop('headers', None))
        return self._send(method, f"{self.API_BASE}{endpoint}", headers=headers, **kwargs)

    @retry_on_failure(max_retries=5, attempts_attr='retry_attempts')
    def _api_request_url(self, url: str, **kwargs) -> requests.Response:
        """Make authenticated GET request to a full URL (for pagination).

        Raises:
            SecurityError: If URL is not from trusted Microsoft domain
        """
        # Validate URL is from Microsoft Graph API (SSRF protection)
        parsed = urlparse(url)
        if not (parsed.scheme == 'https' and
                parsed.hostname == 'graph.microsoft.com' and
                parsed.path.startswith('/v1.0/')):
            raise SecurityError(
                f"Untrusted pagination URL: {url} "
                f"(scheme={parsed.scheme}, host={parsed.hostname}, path={parsed.path})"
            )

        headers = self._auth_headers(kwargs.pop('headers', None))
        return self._send('GET', url, headers=headers, **kwargs)

    def _list_children(self, folder_id: str) -> List[Dict[str, Any]]:
        """List all children of a folder, following pagination links."""
        all_items = []
        response = self._api_request('GET', f"/me/drive/items/{folder_id}/children")

        while True:
            data = response.json()
            all_items.extend(data.get('value', []))

            next_link = data.get('@odata.nextLink')
            if not next_link:
                break
            logger.debug(f"Following pagination link, fetched {len(all_items)} items so far")
            response = self._api_request_url(next_link)

        return all_items

    def pre_flight_check(self) -> str:
        """Find the sync root folder in the drive root."""
        response = self._api_request('GET', "/me/drive/root")
        root_id = response.json()['id']

        candidates = [
            item for item in self._list_children(root_id)
            if 'folder' in item and item.get('name') == self.sync_folder_name
        ]
        if not candidates:
            raise SyncRootNotFoundError(
                f"'{self.sync_folder_name}' folder not found for {self.account_id}"
            )
        if len(candidates) > 1:
            raise AmbiguousSyncRootError(
                f"Found {len(candidates)} '{self.sync_folder_name}' folders for {self.account_id}; "
                f"remove the extra ones manually",
                details={'folder_ids': [item['id'] for item in candidates]},
            )

        self._sync_folder_id = candidates[0]['id']
        return self._sync_folder_id

    def get_sync_folder_id(self) -> str:
        if self._sync_folder_id is None:
            return self.pre_flight_check()
        return self._sync_folder_id

    def list_folders(self, parent_id: str) -> List[Folder]:
        return [
            self._to_folder(item, parent_id)
            for item in self._list_children(parent_id)
            if 'folder' in item
        ]

    def list_files(self, folder_id: str) -> List[Replica]:
        return [
            self._to_replica(item, folder_id)
            for item in self._list_children(folder_id)
            if 'file' in item
        ]

    def list_drive_root(self) -> Tuple[List[Folder], List[Replica]]:
        root_id = self._api_request('GET', "/me/drive/root").json()['id']
        items = self._list_children(root_id)
        folders = [self._to_folder(item, root_id) for item in items if 'folder' in item]
        files = [self._to_replica(item, root_id) for item in items if 'file' in item]
        return folders, files

    def _to_folder(self, item: Dict[str, Any], parent_id: Optional[str]) -> Folder:
        return Folder(
            id=item['id'],
            name=item['name'],
            provider=self.provider,
            owner_account_id=self.account_id,
            parent_folder_id=parent_id or item.get('parentReference', {}).get('id'),
        )

    def _to_replica(self, item: Dict[str, Any], folder_id: Optional[str] = None) -> Replica:
        hashes = item.get('file', {}).get('hashes', {})
        native_hash = None
        if hashes.get('quickXorHash'):
            native_hash = f"quickxor:{hashes['quickXorHash']}"
        elif hashes.get('sha256Hash'):
            native_hash = f"sha256:{hashes['sha256Hash'].lower()}"
        elif hashes.get('sha1Hash'):
            native_hash = f"sha1:{hashes['sha1Hash'].lower()}"

        modified = item.get('lastModifiedDateTime')
        return Replica(
            name=item['name'],
            size=item.get('size', 0),
            native_id=item['id'],
            provider=self.provider,
            account_id=self.account_id,
            native_hash=native_hash,
            mod_time=isoparse(modified) if modified else None,
            parent_folder_id=folder_id or item.get('parentReference', {}).get('id'),
        )

    def upload_file(self, folder_id: str, name: str, reader: BinaryIO, size: int) -> Replica:
        """Upload a stream, never replacing an existing item."""
        target = f"/me/drive/items/{folder_id}:/{quote(name)}:"

        if size <= self.SIMPLE_UPLOAD_LIMIT:
            response = self._api_request(
                'PUT',
                f"{target}/content?@microsoft.graph.conflictBehavior=fail",
                data=reader.read(),
                headers={'Content-Type': 'application/octet-stream'},
            )
            item = response.json()
        else:
            item = self._upload_session(target, reader, size)

        logger.info(f"Uploaded: {name} ({size} bytes) to {self.account_id}")
        return self._to_replica(item, folder_id)

    def _upload_session(self, target: str, reader: BinaryIO, size: int) -> Dict[str, Any]:
        session = self._api_request(
            'POST',
            f"{target}/createUploadSession",
            json={'item': {'@microsoft.graph.conflictBehavior': 'fail'}},
        ).json()
        upload_url = session['uploadUrl']

        offset = 0
        item: Dict[str, Any] = {}
        while offset < size:
            chunk = reader.read(min(self.UPLOAD_CHUNK_SIZE, size - offset))
            if not chunk:
                raise NetworkError(f"Source stream ended at {offset} of {size} bytes")
            item = self._put_chunk(upload_url, chunk, offset, size)
            offset += len(chunk)
        return item

    @retry_on_failure(max_retries=5, attempts_attr='retry_attempts')
    def _put_chunk(self, upload_url: str, chunk: bytes, offset: int, size: int) -> Dict[str, Any]:
        # Upload URLs are pre-authenticated; no bearer token
        headers = {
            'Content-Length': str(len(chunk)),
            'Content-Range': f"bytes {offset}-{offset + len(chunk) - 1}/{size}",
        }
        response = self._send('PUT', upload_url, data=chunk, headers=headers)
        return response.json() if response.content else {}

    def download_file(self, native_id: str) -> BinaryIO:
        response = self._api_request('GET', f"/me/drive/items/{native_id}/content", stream=True)
        response.raw.decode_content = True
        return response.raw

    def delete_file(self, native_id: str) -> None:
        self._api_request('DELETE', f"/me/drive/items/{native_id}")
        logger.info(f"Deleted item {native_id} from {self.account_id}")

    def move_file(self, native_id: str, target_folder_id: str) -> None:
        self._api_request(
            'PATCH',
            f"/me/drive/items/{native_id}",
            json={'parentReference': {'id': target_folder_id}},
        )

    def create_folder(self, parent_id: str, name: str) -> Folder:
        data = {
            "name": name,
            "folder": {},
            "@microsoft.graph.conflictBehavior": "fail"
        }
        try:
            response = self._api_request('POST', f"/me/drive/items/{parent_id}/children", json=data)
        except ConflictError:
            # Folder already exists, reuse it
            for folder in self.list_folders(parent_id):
                if folder.name == name:
                    logger.debug(f"Folder already exists: {name}")
                    return folder
            raise
        logger.info(f"Created folder: {name}")
        return self._to_folder(response.json(), parent_id)

    def share_folder(self, folder_id: str, account_id: str, role: str = 'writer') -> None:
        graph_role = 'read' if role in ('reader', 'read') else 'write'
        self._api_request(
            'POST',
            f"/me/drive/items/{folder_id}/invite",
            json={
                'recipients': [{'email': account_id}],
                'roles': [graph_role],
                'requireSignIn': True,
                'sendInvitation': False,
            },
        )

    def get_quota(self) -> Quota:
        quota = self._api_request('GET', "/me/drive").json().get('quota', {})
        total = quota.get('total', 0)
        used = quota.get('used', 0)
        return Quota(total=total, used=used, free=quota.get('remaining', max(total - used, 0)))

    def get_user_identity(self) -> str:
        user = self._api_request('GET', "/me").json()
        return user.get('mail') or user.get('userPrincipalName', '')
