"""Gmail API adapter used by the index sync and the Gmail action backend.

Only metadata reads and bulk label changes / deletes are needed here. Every
call to the blocking Google client runs in a worker thread, and any failure
it raises comes back as ``GmailAPIError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from mailbox_cleanup.config import Settings
from mailbox_cleanup.exceptions import AuthenticationError, ConfigurationError, GmailAPIError
from mailbox_cleanup.utils import chunked

logger = structlog.get_logger()

# users.messages.batchModify / batchDelete accept at most 1000 ids per call.
GMAIL_BATCH_LIMIT = 1000
# users.messages.list page size ceiling.
LIST_PAGE_LIMIT = 500


class GmailClient:
    """Authenticated handle on one mailbox (``userId="me"``).

    ``authenticate()`` must be awaited before any other call.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        from mailbox_cleanup.config import get_settings

        self.settings = settings or get_settings()
        self._service: Any | None = None
        logger.info("gmail_client_initialized", scope=self.settings.gmail_scope)

    async def authenticate(self) -> None:
        """Load or obtain OAuth2 credentials and build the API service.

        A cached token is refreshed when expired; otherwise the installed-app
        consent flow runs and the new token is written next to the settings path.

        Raises:
            ConfigurationError: If the client secrets file does not exist.
            AuthenticationError: If the OAuth flow or token refresh fails.
        """

        if self._service is not None:
            return

        secrets = Path(self.settings.gmail_credentials_path)
        if not secrets.exists():
            raise ConfigurationError(f"Gmail credentials file not found: {secrets}")

        token = Path(self.settings.gmail_token_path)
        logger.info("gmail_oauth_started", secrets=str(secrets), token=str(token))
        try:
            self._service = await asyncio.to_thread(self._connect, secrets, token)
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_oauth_failed", error=str(exc))
            raise AuthenticationError(f"Gmail OAuth failed: {exc}") from exc
        logger.info("gmail_oauth_completed")

    async def list_messages(
        self,
        max_results: int | None = None,
        query: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return ``{"id", "threadId"}`` stubs for matching messages, newest first.

        ``None`` for ``max_results`` walks every page.
        """

        self._require_service()
        logger.info("gmail_list_started", max_results=max_results, query=query)
        return await self._call("list", self._list_pages, max_results, query)

    async def get_message(
        self,
        message_id: str,
        *,
        format: str = "metadata",
        metadata_headers: list[str] | None = None,
    ) -> dict[str, Any]:
        self._require_service()
        logger.debug("gmail_get_message", message_id=message_id, format=format)
        return await self._call(
            "get",
            lambda: self._messages()
            .get(userId="me", id=message_id, format=format, metadataHeaders=metadata_headers)
            .execute(),
        )

    async def trash_messages(self, message_ids: list[str]) -> int:
        """Move messages to Trash (recoverable for 30 days)."""

        return await self._batch_modify(
            message_ids, add_label_ids=["TRASH"], remove_label_ids=["INBOX", "UNREAD"]
        )

    async def archive_messages(self, message_ids: list[str]) -> int:
        """Remove messages from the inbox without deleting them."""

        return await self._batch_modify(message_ids, add_label_ids=[], remove_label_ids=["INBOX"])

    async def delete_messages(self, message_ids: list[str]) -> int:
        """Permanently delete messages. Requires the full mail.google.com scope."""

        self._require_service()
        if not message_ids:
            return 0

        logger.info("gmail_batch_delete", count=len(message_ids))
        for chunk in chunked(list(message_ids), GMAIL_BATCH_LIMIT):
            body = {"ids": chunk}
            await self._call(
                "batch_delete",
                lambda: self._messages().batchDelete(userId="me", body=body).execute(),
            )
        return len(message_ids)

    async def _batch_modify(
        self,
        message_ids: list[str],
        *,
        add_label_ids: list[str],
        remove_label_ids: list[str],
    ) -> int:
        self._require_service()
        if not message_ids:
            return 0

        logger.info(
            "gmail_batch_modify",
            count=len(message_ids),
            add_label_ids=add_label_ids,
            remove_label_ids=remove_label_ids,
        )
        for chunk in chunked(list(message_ids), GMAIL_BATCH_LIMIT):
            body = {"ids": chunk, "addLabelIds": add_label_ids, "removeLabelIds": remove_label_ids}
            await self._call(
                "batch_modify",
                lambda: self._messages().batchModify(userId="me", body=body).execute(),
            )
        return len(message_ids)

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_request_failed", operation=operation, error=str(exc))
            raise GmailAPIError(f"Gmail {operation} failed: {exc}") from exc

    def _require_service(self) -> None:
        if self._service is None:
            raise AuthenticationError("Gmail client is not authenticated; await authenticate()")

    def _messages(self) -> Any:
        return self._service.users().messages()

    def _connect(self, secrets: Path, token: Path) -> Any:
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from google_auth_oauthlib.flow import InstalledAppFlow
        from googleapiclient.discovery import build

        scopes = [self.settings.gmail_scope]
        creds = None
        if token.exists():
            creds = Credentials.from_authorized_user_file(str(token), scopes)

        stale = creds is None or not creds.valid
        if creds and creds.expired and creds.refresh_token:
            creds.refresh(Request())
        if not creds or not creds.valid:
            flow = InstalledAppFlow.from_client_secrets_file(str(secrets), scopes)
            creds = flow.run_local_server(port=0)
        if stale:
            token.parent.mkdir(parents=True, exist_ok=True)
            token.write_text(creds.to_json(), encoding="utf-8")

        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _list_pages(self, max_results: int | None, query: str | None) -> list[dict[str, Any]]:
        stubs: list[dict[str, Any]] = []
        page_token: str | None = None
        while max_results is None or len(stubs) < max_results:
            want = LIST_PAGE_LIMIT
            if max_results is not None:
                want = min(want, max_results - len(stubs))
            page = (
                self._messages()
                .list(userId="me", maxResults=want, q=query, pageToken=page_token)
                .execute()
            )
            stubs.extend(page.get("messages") or [])
            page_token = page.get("nextPageToken")
            if not page_token:
                break
        return stubs[:max_results] if max_results is not None else stubs
