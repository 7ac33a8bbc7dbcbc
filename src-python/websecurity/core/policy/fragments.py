"""Policy fragments — named, inheritable units of CORS / CSRF settings.

A fragment selects a subset of requests (its ``request_matcher``) and carries
domain settings.  Fragments form a tree through ``parent_name``; the compiler
(:mod:`websecurity.core.policy.compiler`) turns a flat list of them into a
validated tree with effective (inherited) settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Optional

from websecurity.core.matchers import NONE, RequestMatcher

# Name of the distinguished root fragment.
ROOT_NAME = "root"

# Defaults applied by the CORS layer when the effective value is unset.
DEFAULT_CORS_ALLOWED_METHODS = frozenset({"GET", "HEAD"})
DEFAULT_CORS_ALLOW_CREDENTIALS = False
DEFAULT_CORS_MAX_AGE = 5


def _copy_set(value: Optional[set[str]]) -> Optional[set[str]]:
    return set(value) if value is not None else None


def _union(local: Optional[set[str]], inherited: Optional[set[str]]) -> Optional[set[str]]:
    """Union of two optional sets, always returning a set owned by the caller."""
    if local is None:
        return _copy_set(inherited)
    if inherited is None:
        return set(local)
    return set(local) | inherited


@dataclass
class PolicySettings:
    """Domain settings of a fragment.

    The base class has no settings of its own; CSRF fragments use it as is
    (a CSRF fragment is simply "protected or not").
    """

    def copy(self) -> PolicySettings:
        return type(self)()

    def inherit(self, parent: PolicySettings) -> PolicySettings:
        """Return new settings combining these (local) with *parent*'s effective ones."""
        return self.copy()


@dataclass
class CorsSettings(PolicySettings):
    """CORS settings.  ``None`` means "not set locally".

    Set-valued settings merge with inherited ones by union; scalar settings
    (``allow_credentials``, ``max_age``) override inherited values when set.
    """

    allowed_origins: Optional[set[str]] = None
    allowed_methods: Optional[set[str]] = None
    allowed_headers: Optional[set[str]] = None
    exposed_headers: Optional[set[str]] = None
    allow_credentials: Optional[bool] = None
    max_age: Optional[int] = None

    def copy(self) -> CorsSettings:
        return CorsSettings(
            allowed_origins=_copy_set(self.allowed_origins),
            allowed_methods=_copy_set(self.allowed_methods),
            allowed_headers=_copy_set(self.allowed_headers),
            exposed_headers=_copy_set(self.exposed_headers),
            allow_credentials=self.allow_credentials,
            max_age=self.max_age,
        )

    def inherit(self, parent: PolicySettings) -> CorsSettings:
        if not isinstance(parent, CorsSettings):
            return self.copy()
        return CorsSettings(
            allowed_origins=_union(self.allowed_origins, parent.allowed_origins),
            allowed_methods=_union(self.allowed_methods, parent.allowed_methods),
            allowed_headers=_union(self.allowed_headers, parent.allowed_headers),
            exposed_headers=_union(self.exposed_headers, parent.exposed_headers),
            allow_credentials=(
                self.allow_credentials if self.allow_credentials is not None
                else parent.allow_credentials
            ),
            max_age=self.max_age if self.max_age is not None else parent.max_age,
        )


@dataclass(eq=False)
class PolicyFragment:
    """One declared policy fragment.

    Equality is structural and works across any ``PolicyFragment`` instance
    (including wrappers and subclasses), so a fragment can be removed from a
    live collection using an equal instance obtained elsewhere.
    """

    name: Optional[str] = None
    parent_name: Optional[str] = None
    request_matcher: RequestMatcher = NONE
    enabled: bool = True
    abstract: bool = False
    settings: PolicySettings = field(default_factory=PolicySettings)

    def __post_init__(self) -> None:
        if self.request_matcher is None:
            self.request_matcher = NONE
        if self.settings is None:
            self.settings = PolicySettings()

    def copy(self) -> PolicyFragment:
        """Copy with independent settings (matchers are immutable and shared)."""
        return PolicyFragment(
            name=self.name,
            parent_name=self.parent_name,
            request_matcher=self.request_matcher,
            enabled=self.enabled,
            abstract=self.abstract,
            settings=self.settings.copy(),
        )

    def _key(self) -> tuple[Any, ...]:
        return tuple(getattr(self, f.name) for f in fields(PolicyFragment))

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, PolicyFragment):
            return NotImplemented
        return self._key() == other._key()

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"PolicyFragment {{name: {self.name}, matcher: {self.request_matcher!r}}}"
