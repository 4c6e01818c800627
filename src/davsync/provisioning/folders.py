"""Idempotent creation of the local and remote halves of a sync folder."""
from __future__ import annotations

import logging
from pathlib import Path

from ..errors import ErrorCategory, ErrorKind
from ..filesystem import (
    prepare_local_path,
    prepare_target_path,
    set_folder_minimum_permissions,
    setup_favorite_link,
)
from .client import ProbeClient, ProbeResponse
from .connectivity import PROPFIND_HEADERS, PROPFIND_LASTMODIFIED
from .models import AccountDescriptor, ProvisionResult, ProvisionStatus, dav_url

LOGGER = logging.getLogger(__name__)

# MKCOL answers treated as "the collection is already there". 405 is what
# WebDAV servers send for an existing collection; 202 is kept for servers
# that acknowledge without creating.
MKCOL_ALREADY_EXISTS = frozenset({202, 405})


class FolderProvisioner:
    """Ensure a local directory and a remote collection both exist."""

    def __init__(
        self,
        client: ProbeClient,
        *,
        dav_path: str,
        register_favorite: bool = True,
        bookmarks: Path | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self._dav_path = dav_path
        self._register_favorite = register_favorite
        self._bookmarks = bookmarks
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Local side
    # ------------------------------------------------------------------
    def ensure_local(self, path: str | Path) -> ProvisionResult:
        """Create *path* if needed; an existing directory is left untouched."""
        normalized = prepare_local_path(path)
        target = Path(normalized)
        if target.is_dir():
            return ProvisionResult(
                ProvisionStatus.ALREADY_EXISTS,
                normalized,
                f"Local sync folder {normalized} already exists, setting it up for sync.",
            )
        if target.exists():
            return ProvisionResult(
                ProvisionStatus.FAILED,
                normalized,
                f"Could not create local folder {normalized}: a file with that name exists.",
                category=ErrorCategory.LOCAL_FILESYSTEM,
            )
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Failed to create %s: %s", target, exc)
            return ProvisionResult(
                ProvisionStatus.FAILED,
                normalized,
                f"Could not create local folder {normalized}: {exc.strerror or exc}",
                category=ErrorCategory.LOCAL_FILESYSTEM,
            )

        try:
            set_folder_minimum_permissions(target)
        except OSError as exc:
            LOGGER.warning("Unable to adjust permissions of %s: %s", target, exc)
        if self._register_favorite:
            try:
                setup_favorite_link(target, bookmarks=self._bookmarks)
            except OSError as exc:
                LOGGER.warning("Unable to add %s to favourites: %s", target, exc)
        return ProvisionResult(
            ProvisionStatus.CREATED,
            normalized,
            f"Creating local sync folder {normalized}... ok",
        )

    # ------------------------------------------------------------------
    # Remote side
    # ------------------------------------------------------------------
    async def ensure_remote(self, account: AccountDescriptor, remote_path: str) -> ProvisionResult:
        """Create the remote collection unless it already exists."""
        target = prepare_target_path(remote_path)
        url = dav_url(account.base_url, self._dav_path, target)
        response = await self._client.send(
            "PROPFIND",
            url,
            credentials=account.credentials,
            headers=PROPFIND_HEADERS,
            content=PROPFIND_LASTMODIFIED,
            timeout=self._timeout,
        )
        if not response.error.is_error and response.redirect_target is None:
            return ProvisionResult(
                ProvisionStatus.EXISTED,
                target,
                f"Remote folder {target} found.",
                status_code=response.status_code,
            )
        if response.error is not ErrorKind.CONTENT_NOT_FOUND:
            return _failure(target, response, f"Error: {_reason(response)}")
        if not remote_path.strip():
            return ProvisionResult(
                ProvisionStatus.FAILED,
                target,
                "No remote folder specified!",
                status_code=response.status_code,
                category=ErrorCategory.REMOTE_FOLDER_CONFLICT,
            )
        return await self._create_remote(account, target, url)

    async def _create_remote(
        self, account: AccountDescriptor, target: str, url: str
    ) -> ProvisionResult:
        LOGGER.debug("Creating remote folder %s", url)
        response = await self._client.send(
            "MKCOL",
            url,
            credentials=account.credentials,
            timeout=self._timeout,
        )
        status = response.status_code
        if status in MKCOL_ALREADY_EXISTS:
            return ProvisionResult(
                ProvisionStatus.ALREADY_EXISTS,
                target,
                f"The remote folder {target} already exists. Connecting it for syncing.",
                status_code=status,
            )
        if status is not None and 200 <= status < 300:
            return ProvisionResult(
                ProvisionStatus.CREATED,
                target,
                f"Remote folder {target} created successfully.",
                status_code=status,
            )
        if response.error is ErrorKind.AUTHENTICATION_REQUIRED:
            return ProvisionResult(
                ProvisionStatus.FAILED,
                target,
                "The remote folder creation failed because the provided credentials are "
                "wrong! Please go back and check your credentials.",
                status_code=status,
                category=ErrorCategory.AUTHENTICATION_INVALID,
            )
        return _failure(
            target,
            response,
            f"Remote folder {target} creation failed with error {_reason(response)}.",
            default=ErrorCategory.REMOTE_FOLDER_CONFLICT,
        )


def _reason(response: ProbeResponse) -> str:
    if response.status_code is not None and response.error.is_error:
        return str(response.status_code)
    if response.redirect_target is not None:
        return f"{response.status_code} (redirected to {response.redirect_target})"
    return response.error_string or str(response.status_code)


def _failure(
    target: str,
    response: ProbeResponse,
    message: str,
    *,
    default: ErrorCategory = ErrorCategory.REMOTE_FOLDER_CONFLICT,
) -> ProvisionResult:
    if response.error is ErrorKind.CANCELLED:
        category = ErrorCategory.USER_CANCELLED
    elif response.error is ErrorKind.AUTHENTICATION_REQUIRED:
        category = ErrorCategory.AUTHENTICATION_INVALID
    elif response.status_code is None:
        category = ErrorCategory.NETWORK_TRANSPORT
    else:
        category = default
    return ProvisionResult(
        ProvisionStatus.FAILED,
        target,
        message,
        status_code=response.status_code,
        category=category,
    )


__all__ = ["FolderProvisioner", "MKCOL_ALREADY_EXISTS"]
