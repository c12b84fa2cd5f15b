"""Clients for the identity directory and connector account feed."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request

from correlation_engine.config import get_settings
from correlation_engine.matching.types import ExternalAccount, IdentityCandidate


class CollaboratorError(RuntimeError):
    """Raised when an external collaborator call fails permanently."""


class TransientCollaboratorError(CollaboratorError):
    """Raised when a collaborator call may succeed if retried."""


class IdentityDirectory(Protocol):
    """Protocol for the internal identity store."""

    def lookup_candidates(
        self,
        connector_id: str,
        attributes: dict[str, object],
        *,
        include_deactivated: bool = False,
    ) -> list[IdentityCandidate]:
        """Return identities plausibly owning an account with these attributes."""

    def create_identity(self, connector_id: str, account: ExternalAccount) -> str:
        """Provision a new identity from an account and return its id."""


class AccountFeed(Protocol):
    """Protocol for connector account retrieval."""

    def get_account(self, connector_id: str, account_id: str) -> ExternalAccount:
        """Return current attributes of one connector account."""

    def list_account_ids(self, connector_id: str) -> list[str]:
        """Return every account id known for a connector."""


@dataclass(slots=True)
class _JsonHttpClient:
    base_url: str
    timeout_seconds: int = 30

    def request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        req = urllib_request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8") if payload is not None else None,
            method=method,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        try:
            with urllib_request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read().decode("utf-8")
        except urllib_error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            message = f"{method} {url} returned HTTP {exc.code}: {detail}"
            if exc.code >= 500 or exc.code in (408, 429):
                raise TransientCollaboratorError(message) from exc
            raise CollaboratorError(message) from exc
        except urllib_error.URLError as exc:
            raise TransientCollaboratorError(f"{method} {url} failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise TransientCollaboratorError(f"{method} {url} timed out") from exc
        try:
            return json.loads(raw) if raw else None
        except json.JSONDecodeError as exc:
            raise CollaboratorError(f"{method} {url} returned invalid JSON") from exc


@dataclass(slots=True)
class HttpIdentityDirectory:
    """Identity directory REST client using stdlib HTTP."""

    base_url: str
    timeout_seconds: int = 30

    def lookup_candidates(
        self,
        connector_id: str,
        attributes: dict[str, object],
        *,
        include_deactivated: bool = False,
    ) -> list[IdentityCandidate]:
        client = _JsonHttpClient(self.base_url, self.timeout_seconds)
        decoded = client.request(
            "POST",
            "/identities/candidates",
            {
                "connector_id": connector_id,
                "attributes": attributes,
                "include_deactivated": include_deactivated,
            },
        )
        try:
            rows = decoded["items"] if isinstance(decoded, dict) else decoded
            return [
                IdentityCandidate(
                    identity_id=str(row["id"]),
                    attributes=dict(row.get("attributes") or {}),
                    display_name=row.get("display_name"),
                    is_deactivated=bool(row.get("is_deactivated", False)),
                )
                for row in rows
            ]
        except (KeyError, TypeError, AttributeError) as exc:
            raise CollaboratorError("Identity directory returned an unexpected candidate payload") from exc

    def create_identity(self, connector_id: str, account: ExternalAccount) -> str:
        client = _JsonHttpClient(self.base_url, self.timeout_seconds)
        decoded = client.request(
            "POST",
            "/identities",
            {
                "source_connector_id": connector_id,
                "source_account_id": account.account_id,
                "display_name": account.display_name,
                "attributes": account.attributes,
            },
        )
        try:
            return str(decoded["id"])
        except (KeyError, TypeError) as exc:
            raise CollaboratorError("Identity directory did not return the new identity id") from exc


@dataclass(slots=True)
class HttpAccountFeed:
    """Connector account feed REST client using stdlib HTTP."""

    base_url: str
    timeout_seconds: int = 30

    def get_account(self, connector_id: str, account_id: str) -> ExternalAccount:
        client = _JsonHttpClient(self.base_url, self.timeout_seconds)
        path = (
            f"/connectors/{urllib_parse.quote(connector_id, safe='')}"
            f"/accounts/{urllib_parse.quote(account_id, safe='')}"
        )
        decoded = client.request("GET", path)
        try:
            return ExternalAccount(
                connector_id=connector_id,
                account_id=account_id,
                attributes=dict(decoded.get("attributes") or {}),
                display_name=decoded.get("display_name"),
            )
        except AttributeError as exc:
            raise CollaboratorError("Account feed returned an unexpected account payload") from exc

    def list_account_ids(self, connector_id: str) -> list[str]:
        client = _JsonHttpClient(self.base_url, self.timeout_seconds)
        decoded = client.request("GET", f"/connectors/{urllib_parse.quote(connector_id, safe='')}/accounts")
        try:
            rows = decoded["items"] if isinstance(decoded, dict) else decoded
            return [str(row["id"]) if isinstance(row, dict) else str(row) for row in rows]
        except (KeyError, TypeError) as exc:
            raise CollaboratorError("Account feed returned an unexpected account list") from exc


def get_identity_directory() -> IdentityDirectory:
    """Return the configured identity directory client."""

    settings = get_settings()
    return HttpIdentityDirectory(
        base_url=settings.identity_directory_url,
        timeout_seconds=settings.collaborator_timeout_seconds,
    )


def get_account_feed() -> AccountFeed:
    """Return the configured account feed client."""

    settings = get_settings()
    return HttpAccountFeed(
        base_url=settings.account_feed_url,
        timeout_seconds=settings.collaborator_timeout_seconds,
    )
