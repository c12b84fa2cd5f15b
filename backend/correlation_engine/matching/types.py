"""Typed inputs to the matching pipeline independent of persistence."""

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class ExternalAccount:
    """An account discovered on a connector, as returned by the account feed."""

    connector_id: str
    account_id: str
    attributes: dict[str, object] = field(default_factory=dict)
    display_name: str | None = None


@dataclass(frozen=True, slots=True)
class IdentityCandidate:
    """An internal identity considered as a possible owner of an account."""

    identity_id: str
    attributes: dict[str, object] = field(default_factory=dict)
    display_name: str | None = None
    is_deactivated: bool = False
