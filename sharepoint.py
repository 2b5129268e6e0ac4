#!/usr/bin/env python3
"""
sharepoint.py - SharePoint document library client

Signs in with a delegated Microsoft Entra token (browser or device code),
lists folders and files of a library over the SharePoint REST API and
streams files to local disk.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse

import msal
import requests

from common import speak, speak_plain
from errors import AuthError


AUTHORITY_URL = "https://login.microsoftonline.com"
CHUNK_SIZE = 4 * 1024 * 1024

# Libraries expose their form templates as a regular sub-folder
HIDDEN_FOLDERS = {"Forms"}


class SharePointError(Exception):
    """REST call failed."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


@dataclass(frozen=True)
class RemoteFolder:
    name: str
    server_relative_url: str


@dataclass(frozen=True)
class RemoteFile:
    name: str
    server_relative_url: str
    size: int = 0


def api_scope(site_url: str) -> str:
    """Resource scope for a site: scheme and host only, e.g. https://contoso.sharepoint.com/.default"""
    parsed = urlparse(site_url)
    return f"{parsed.scheme}://{parsed.netloc}/.default"


def acquire_token(config, app=None) -> str:
    """
    Obtain a bearer token for the site in config.

    Args:
        config: RunConfig with site_url, auth_method, client_id and tenant_id
        app: msal application, created from config when not given

    Raises:
        AuthError: sign-in was cancelled or failed
    """
    scopes = [api_scope(config.site_url)]
    if app is None:
        app = msal.PublicClientApplication(
            config.client_id,
            authority=f"{AUTHORITY_URL}/{config.tenant_id}"
        )

    try:
        accounts = app.get_accounts()
        if accounts:
            result = app.acquire_token_silent(scopes, account=accounts[0])
            if result and "access_token" in result:
                speak("Using cached authentication")
                return result["access_token"]

        if config.auth_method == "device":
            flow = app.initiate_device_flow(scopes=scopes)
            if "user_code" not in flow:
                raise AuthError(
                    f"Failed to create device flow: {flow.get('error_description', 'Unknown error')}"
                )
            speak_plain("")
            speak_plain(flow.get("message", f"Enter code {flow['user_code']} at {flow.get('verification_uri')}"))
            speak_plain("")
            result = app.acquire_token_by_device_flow(flow)
        else:
            speak("Opening browser for sign-in...")
            result = app.acquire_token_interactive(scopes=scopes)
    except (requests.exceptions.RequestException, ValueError) as e:
        raise AuthError(f"Authentication failed: {e}") from e

    if not result or "access_token" not in result:
        result = result or {}
        error = result.get("error_description", result.get("error", "no token returned"))
        raise AuthError(f"Authentication failed: {error}")

    return result["access_token"]


def _odata_path(path: str) -> str:
    """Quote a server relative path for use inside an OData string literal."""
    return quote(path.replace("'", "''"), safe="/")


class SharePointClient:
    """REST client bound to one site and one bearer token."""

    def __init__(self, site_url: str, token: str, session: Optional[requests.Session] = None):
        self.site_url = site_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json;odata=nometadata",
            "Authorization": f"Bearer {token}",
        })

    def __enter__(self) -> "SharePointClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def folder_url(self, path: str, collection: str) -> str:
        return f"{self.site_url}/_api/web/GetFolderByServerRelativeUrl('{_odata_path(path)}')/{collection}"

    def file_url(self, path: str) -> str:
        return f"{self.site_url}/_api/web/GetFileByServerRelativeUrl('{_odata_path(path)}')/$value"

    def _get_json(self, url: str) -> dict:
        try:
            response = self.session.get(url)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            raise SharePointError(e.response.status_code, e.response.text[:500]) from e
        except requests.exceptions.RequestException as e:
            raise SharePointError(0, f"Connection failed: {e}") from e
        except ValueError as e:
            raise SharePointError(0, f"Invalid JSON response from {url}") from e

    def list_folders(self, path: str) -> list[RemoteFolder]:
        """List immediate sub-folders of a server relative path."""
        data = self._get_json(self.folder_url(path, "Folders"))
        return [
            RemoteFolder(name=item["Name"], server_relative_url=item["ServerRelativeUrl"])
            for item in data.get("value", [])
            if item.get("Name") not in HIDDEN_FOLDERS
        ]

    def list_files(self, path: str) -> list[RemoteFile]:
        """List files directly inside a folder (not recursive)."""
        data = self._get_json(self.folder_url(path, "Files"))
        return [
            RemoteFile(
                name=item["Name"],
                server_relative_url=item["ServerRelativeUrl"],
                size=int(item.get("Length") or 0),
            )
            for item in data.get("value", [])
        ]

    def download_file(self, remote: RemoteFile, dest: Path) -> int:
        """Stream a file to dest, replacing any existing file. Returns bytes written."""
        written = 0
        try:
            with self.session.get(self.file_url(remote.server_relative_url), stream=True) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            written += len(chunk)
        except requests.exceptions.HTTPError as e:
            raise SharePointError(e.response.status_code, f"Download of {remote.name} failed") from e
        except requests.exceptions.RequestException as e:
            raise SharePointError(0, f"Download of {remote.name} failed: {e}") from e
        return written

    def close(self) -> None:
        """Disconnect the session."""
        self.session.close()


def connect(config, app=None) -> SharePointClient:
    """Sign in and return a client for config.site_url."""
    speak(f"Authenticating to {config.site_url} ({config.auth_method} sign-in)...")
    token = acquire_token(config, app=app)
    return SharePointClient(config.site_url, token)
