"""Gateway that registers, pings and removes repository webhooks on GitHub.

Uses GitHub REST API v3:
- GET    /repos/{owner}/{repo}              (admin permission check)
- GET    /repos/{owner}/{repo}/hooks        (reuse an existing hook)
- POST   /repos/{owner}/{repo}/hooks        (create)
- PATCH  /repos/{owner}/{repo}/hooks/{id}   (re-enable)
- POST   /repos/{owner}/{repo}/hooks/{id}/pings
- DELETE /repos/{owner}/{repo}/hooks/{id}

Reference: https://docs.github.com/en/rest/repos/webhooks
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from webhook_sync.config import GatewaySettings
from webhook_sync.ops.retry_policy import is_retryable_exception
from webhook_sync.services.repository_directory import RepositoryRef

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base exception for webhook gateway failures."""

    permanent = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayTransientError(GatewayError):
    """Network failure, timeout, rate limit or provider-side 5xx."""


class GatewayPermanentError(GatewayError):
    """Failure that will not go away by retrying (missing repo, no access, bad URL)."""

    permanent = True


@dataclass(frozen=True)
class WebhookRegistration:
    webhook_id: str
    webhook_url: str
    events: list[str] = field(default_factory=list)


class WebhookGateway(Protocol):
    async def subscribe(self, repository: RepositoryRef) -> WebhookRegistration: ...

    async def ping(self, repository: RepositoryRef, webhook_id: str) -> None: ...

    async def unsubscribe(self, repository: RepositoryRef, webhook_id: str) -> None: ...


def split_full_name(full_name: str) -> tuple[str, str]:
    parts = full_name.split("/")
    if len(parts) != 2 or not all(p.strip() for p in parts):
        raise GatewayPermanentError(f"Invalid repository name format: {full_name!r}")
    return parts[0], parts[1]


def is_local_url(url: str) -> bool:
    """True when the provider could not reach ``url`` from the internet."""
    host = (urlparse(url).hostname or "").lower()
    if not host or host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_loopback or address.is_private or address.is_unspecified


class GitHubWebhookGateway:
    """
    Registers delivery hooks on GitHub repositories.

    Calls authenticate with the repository owner's token. ``subscribe`` is
    idempotent: a hook already pointing at the configured delivery URL is
    reused (and re-enabled if needed) instead of creating a duplicate.
    """

    def __init__(self, settings: GatewaySettings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.base_url = settings.api_base_url.rstrip("/")
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.settings.timeout_seconds, connect=10.0),
        ) as client:
            yield client

    @staticmethod
    def _build_headers(token: str) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "Authorization": f"Bearer {token}",
        }

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        token: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Make an API request and map failures onto the gateway error taxonomy.

        Raises:
            GatewayTransientError: network errors, timeouts, rate limits, 5xx
            GatewayPermanentError: 401, 403, 404, 422 and other 4xx
        """
        try:
            response = await client.request(
                method, path, headers=self._build_headers(token), **kwargs
            )
        except httpx.HTTPError as e:
            if is_retryable_exception(e):
                raise GatewayTransientError(f"GitHub API unreachable: {e}") from e
            raise GatewayPermanentError(f"GitHub API request failed: {e}") from e

        status = response.status_code
        if status == 429 or (
            status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"
        ):
            reset_time = response.headers.get("X-RateLimit-Reset", "unknown")
            raise GatewayTransientError(
                f"GitHub API rate limit exceeded. Resets at {reset_time}", status_code=status
            )
        if status >= 500:
            raise GatewayTransientError(
                f"GitHub API error: {status} - {response.text}", status_code=status
            )
        if status == 404:
            raise GatewayPermanentError(f"Resource not found: {path}", status_code=status)
        if status >= 400:
            raise GatewayPermanentError(
                f"GitHub API error: {status} - {response.text}", status_code=status
            )
        return response

    def _token(self, repository: RepositoryRef) -> str:
        if not repository.owner_credential_present:
            raise GatewayPermanentError(f"GitHub token not found for {repository.full_name}")
        assert repository.owner_credential is not None
        return repository.owner_credential.strip()

    async def subscribe(self, repository: RepositoryRef) -> WebhookRegistration:
        owner, repo = split_full_name(repository.full_name)
        token = self._token(repository)
        webhook_url = self.settings.full_webhook_url
        events = list(self.settings.events)

        if is_local_url(webhook_url):
            raise GatewayPermanentError(
                f"Delivery URL {webhook_url} is not reachable by GitHub"
            )

        async with self._session() as client:
            repo_response = await self._request(client, "GET", f"/repos/{owner}/{repo}", token)
            permissions = (repo_response.json() or {}).get("permissions")
            if isinstance(permissions, dict) and not permissions.get("admin", False):
                raise GatewayPermanentError(
                    f"No admin access to {repository.full_name}", status_code=403
                )

            hooks_response = await self._request(
                client, "GET", f"/repos/{owner}/{repo}/hooks", token, params={"per_page": 100}
            )
            for hook in hooks_response.json() or []:
                if (hook.get("config") or {}).get("url") != webhook_url:
                    continue
                hook_id = str(hook["id"])
                if not hook.get("active", True) or set(hook.get("events") or []) != set(events):
                    await self._request(
                        client,
                        "PATCH",
                        f"/repos/{owner}/{repo}/hooks/{hook_id}",
                        token,
                        json={"active": True, "events": events},
                    )
                logger.info(
                    "Reusing existing webhook",
                    extra={"repository": repository.full_name, "webhook_id": hook_id},
                )
                return WebhookRegistration(webhook_id=hook_id, webhook_url=webhook_url, events=events)

            payload = {
                "name": "web",
                "active": True,
                "events": events,
                "config": {
                    "url": webhook_url,
                    "content_type": "json",
                    "secret": self.settings.secret,
                    "insecure_ssl": "0",
                },
            }
            created = await self._request(
                client, "POST", f"/repos/{owner}/{repo}/hooks", token, json=payload
            )
            hook_id = str(created.json()["id"])

        logger.info(
            "Created webhook",
            extra={"repository": repository.full_name, "webhook_id": hook_id},
        )
        return WebhookRegistration(webhook_id=hook_id, webhook_url=webhook_url, events=events)

    async def ping(self, repository: RepositoryRef, webhook_id: str) -> None:
        owner, repo = split_full_name(repository.full_name)
        token = self._token(repository)
        async with self._session() as client:
            await self._request(
                client, "POST", f"/repos/{owner}/{repo}/hooks/{webhook_id}/pings", token
            )

    async def unsubscribe(self, repository: RepositoryRef, webhook_id: str) -> None:
        owner, repo = split_full_name(repository.full_name)
        token = self._token(repository)
        async with self._session() as client:
            try:
                await self._request(
                    client, "DELETE", f"/repos/{owner}/{repo}/hooks/{webhook_id}", token
                )
            except GatewayPermanentError as e:
                if e.status_code != 404:
                    raise
                logger.info(
                    "Webhook already removed",
                    extra={"repository": repository.full_name, "webhook_id": webhook_id},
                )
