"""Fan-out of a verified webhook notification to connected users.

Dropbox only says "something changed for these accounts". For each
affected user the handler obtains a valid token, syncs changes since
the stored cursor, and hands every new audio file to intake. Users are
processed one after another; a failure for one user or one file is
recorded in the results and never stops the rest.
"""

from __future__ import annotations

from typing import Any

from dreamflow.dropbox.client import DropboxClientError
from dreamflow.dropbox.sync import ChangeSync, SyncResult
from dreamflow.dropbox.vault import CredentialError, CredentialVault
from dreamflow.logging import get_logger, log_context
from dreamflow.records.intake import RecordIntake

log = get_logger("dreamflow.webhook.handler")

# Upper bound on list_folder/continue pages drained per user per notification
MAX_PAGES_PER_USER = 10


def notified_accounts(payload: dict[str, Any]) -> list[str]:
    """Account ids named in a webhook body, if any."""
    list_folder = payload.get("list_folder")
    if not isinstance(list_folder, dict):
        return []
    accounts = list_folder.get("accounts")
    if not isinstance(accounts, list):
        return []
    return [str(a) for a in accounts if a]


class WebhookProcessor:
    """Turns one change notification into intake results."""

    def __init__(
        self,
        vault: CredentialVault,
        sync: ChangeSync,
        intake: RecordIntake,
        *,
        max_users: int = 50,
    ) -> None:
        self._vault = vault
        self._sync = sync
        self._intake = intake
        self._max_users = max_users

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Process a verified notification.

        Returns:
            Dict with ``success``, ``processed_files`` and per-file ``results``.
        """
        account_ids = notified_accounts(payload)
        credentials = await self._vault.list_connected(
            account_ids=account_ids or None, limit=self._max_users
        )
        log.info(
            "webhook_fanout",
            accounts=len(account_ids),
            users=len(credentials),
        )

        results: list[dict[str, Any]] = []
        processed = 0
        for credential in credentials:
            with log_context(user_id=credential.user_id):
                user_results = await self._handle_user(credential.user_id)
            processed += sum(1 for r in user_results if r.get("success") and r.get("file"))
            results.extend(user_results)

        return {"success": True, "processed_files": processed, "results": results}

    async def _handle_user(self, user_id: str) -> list[dict[str, Any]]:
        try:
            token = await self._vault.get_valid_token(user_id)
        except CredentialError as e:
            log.warning("webhook_user_skipped", user_id=user_id, error=str(e))
            return [{"user_id": user_id, "success": False, "error": str(e)}]
        except Exception as e:
            log.exception("webhook_token_failed", user_id=user_id, error=str(e))
            return [{"user_id": user_id, "success": False, "error": str(e)}]

        results: list[dict[str, Any]] = []
        for _ in range(MAX_PAGES_PER_USER):
            try:
                synced: SyncResult = await self._sync.sync(user_id, token)
            except DropboxClientError as e:
                log.error("webhook_sync_failed", user_id=user_id, error=str(e))
                results.append({"user_id": user_id, "success": False, "error": str(e)})
                break
            except Exception as e:
                log.exception("webhook_sync_failed", user_id=user_id, error=str(e))
                results.append({"user_id": user_id, "success": False, "error": str(e)})
                break

            for entry in synced.new_files:
                try:
                    outcome = await self._intake.intake(user_id, entry, token)
                except Exception as e:
                    log.error(
                        "webhook_intake_failed",
                        user_id=user_id,
                        path=entry.path_display,
                        error=str(e),
                    )
                    results.append(
                        {
                            "user_id": user_id,
                            "file": entry.path_display,
                            "success": False,
                            "error": str(e),
                        }
                    )
                    continue
                results.append({"user_id": user_id, **outcome.to_dict()})

            if not synced.has_more:
                break

        return results
