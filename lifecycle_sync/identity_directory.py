"""Identity directory: the authoritative set of known people and their aliases."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from lifecycle_sync.models import AliasKind, utcnow
from lifecycle_sync.name_matching import normalize

logger = logging.getLogger("lifecycle_sync.identity_directory")


@dataclass(frozen=True)
class Identity:
    key: str
    display_name: str
    principal_name: str
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    email: Optional[str] = None
    employee_id: Optional[str] = None
    enabled: bool = True


@dataclass(frozen=True)
class Alias:
    identity_key: str
    kind: AliasKind
    value: str              # normalized
    original_value: str
    discovered_from: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


def default_aliases(identity: Identity, discovered_from: str = "directory") -> list[Alias]:
    """Aliases every identity gets when loaded: alternate mail, name orderings, employee id."""
    aliases: list[Alias] = []

    def add(kind: AliasKind, original: Optional[str]) -> None:
        if original and original.strip():
            aliases.append(Alias(
                identity_key=identity.key,
                kind=kind,
                value=normalize(original),
                original_value=original.strip(),
                discovered_from=discovered_from,
            ))

    if identity.email and normalize(identity.email) != normalize(identity.principal_name):
        add(AliasKind.EMAIL, identity.email)
    if identity.given_name and identity.family_name:
        add(AliasKind.NAME, f"{identity.family_name}, {identity.given_name}")
        given_family = f"{identity.given_name} {identity.family_name}"
        if normalize(given_family) != normalize(identity.display_name):
            add(AliasKind.NAME, given_family)
    if identity.employee_id:
        add(AliasKind.EMPLOYEE_ID, identity.employee_id)
    return aliases


class IdentityDirectory(ABC):
    """Lookups the resolver needs. Values passed in are already normalized."""

    @abstractmethod
    def find_by_email(self, value: str) -> Optional[Identity]:
        """Match against primary email or principal name."""

    @abstractmethod
    def find_by_key(self, key: str) -> Optional[Identity]:
        ...

    @abstractmethod
    def find_by_display_name(self, value: str) -> Optional[Identity]:
        ...

    @abstractmethod
    def find_by_given_family(self, value: str) -> Optional[Identity]:
        """Match "given family" concatenation."""

    @abstractmethod
    def find_by_alias(self, value: str, kind: Optional[AliasKind] = None) -> Optional[Identity]:
        ...

    @abstractmethod
    def all_identities(self, limit: Optional[int] = None) -> list[Identity]:
        ...

    @abstractmethod
    def add_alias(self, alias: Alias) -> bool:
        """Insert alias unless its normalized value is already known. Returns True if added."""

    @abstractmethod
    def aliases_for(self, identity_key: str) -> list[Alias]:
        ...


class InMemoryIdentityDirectory(IdentityDirectory):
    """Dictionary-indexed directory, used for tests, dry runs and small directories."""

    def __init__(self, identities: Iterable[Identity] = (), with_default_aliases: bool = True) -> None:
        self._lock = threading.Lock()
        self._by_key: dict[str, Identity] = {}
        self._by_email: dict[str, Identity] = {}
        self._by_display: dict[str, Identity] = {}
        self._by_given_family: dict[str, Identity] = {}
        self._aliases: dict[str, Alias] = {}
        for identity in identities:
            self.add_identity(identity, with_default_aliases=with_default_aliases)

    def add_identity(self, identity: Identity, with_default_aliases: bool = True) -> None:
        with self._lock:
            self._by_key[identity.key] = identity
            # First writer wins for shared emails / names, like a first-row lookup.
            for value in (identity.principal_name, identity.email):
                if value:
                    self._by_email.setdefault(normalize(value), identity)
            self._by_display.setdefault(normalize(identity.display_name), identity)
            if identity.given_name and identity.family_name:
                self._by_given_family.setdefault(
                    normalize(f"{identity.given_name} {identity.family_name}"), identity
                )
        if with_default_aliases:
            for alias in default_aliases(identity):
                self.add_alias(alias)

    def find_by_email(self, value: str) -> Optional[Identity]:
        return self._by_email.get(value)

    def find_by_key(self, key: str) -> Optional[Identity]:
        return self._by_key.get(key)

    def find_by_display_name(self, value: str) -> Optional[Identity]:
        return self._by_display.get(value)

    def find_by_given_family(self, value: str) -> Optional[Identity]:
        return self._by_given_family.get(value)

    def find_by_alias(self, value: str, kind: Optional[AliasKind] = None) -> Optional[Identity]:
        alias = self._aliases.get(value)
        if alias is None or (kind is not None and alias.kind != kind):
            return None
        return self._by_key.get(alias.identity_key)

    def all_identities(self, limit: Optional[int] = None) -> list[Identity]:
        identities = list(self._by_key.values())
        return identities[:limit] if limit is not None else identities

    def add_alias(self, alias: Alias) -> bool:
        with self._lock:
            if alias.identity_key not in self._by_key:
                raise KeyError(f"Unknown identity {alias.identity_key!r}")
            if alias.value in self._aliases:
                return False
            self._aliases[alias.value] = alias
        logger.debug("Added alias %r for %s", alias.value, alias.identity_key)
        return True

    def aliases_for(self, identity_key: str) -> list[Alias]:
        return [a for a in self._aliases.values() if a.identity_key == identity_key]
