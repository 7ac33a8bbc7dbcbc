"""Pydantic models for declarative policy entries and API payloads."""

from __future__ import annotations

import enum
import re
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, Field

from websecurity.core.errors import MatcherSpecError
from websecurity.core.matchers import KNOWN_METHODS, NONE, PatternRequestMatcher, RequestMatcher, any_of
from websecurity.core.policy.fragments import CorsSettings, PolicyFragment, PolicySettings


class PolicyKind(str, enum.Enum):
    """Which policy layer a set of entries configures."""
    CORS = "cors"
    CSRF = "csrf"


class MatcherType(str, enum.Enum):
    REGEX = "regex"


# ---------------------------------------------------------------------------
# Request matchers
# ---------------------------------------------------------------------------

_METHOD_SEPARATORS = re.compile(r"[\s,]+")


def parse_methods(methods: Union[str, Iterable[str], None]) -> Optional[list[str]]:
    """Parse a comma/space separated method list.  ``None``/blank means "any method"."""
    if methods is None:
        return None
    if isinstance(methods, str):
        names = [m for m in _METHOD_SEPARATORS.split(methods) if m]
    else:
        names = [m.strip() for m in methods if m and m.strip()]
    if not names:
        return None

    parsed = []
    for name in names:
        method = name.upper()
        if method not in KNOWN_METHODS:
            raise MatcherSpecError(
                f"Unknown HTTP method {name!r} in request matcher. "
                f"Expected one of: {', '.join(sorted(KNOWN_METHODS))}."
            )
        parsed.append(method)
    return parsed


class RequestMatcherSpec(BaseModel):
    """One request matcher entry, e.g. ``{"type": "regex", "pattern": "/api/.*"}``."""
    type: str = MatcherType.REGEX.value
    pattern: str = ""
    methods: Optional[Union[str, list[str]]] = None   # "GET POST" or "GET,POST" or a list
    insensitive: bool = False

    def to_matcher(self) -> RequestMatcher:
        if self.type != MatcherType.REGEX.value:
            raise MatcherSpecError(
                f"Unknown request matcher type {self.type!r}. "
                f"Supported types: {', '.join(t.value for t in MatcherType)}."
            )
        if not self.pattern:
            raise MatcherSpecError("'pattern' attribute is empty or unspecified.")
        try:
            return PatternRequestMatcher(
                self.pattern,
                parse_methods(self.methods),
                case_insensitive=self.insensitive,
            )
        except re.error as exc:
            raise MatcherSpecError(f"Invalid 'pattern' {self.pattern!r}: {exc}") from exc


# ---------------------------------------------------------------------------
# Policy fragments
# ---------------------------------------------------------------------------

class PolicyFragmentSpec(BaseModel):
    """A declared fragment.  ``matcher`` may be one matcher entry or a list (any of them)."""
    name: Optional[str] = None
    parent: Optional[str] = None
    enabled: bool = True
    matcher: Optional[Union[RequestMatcherSpec, list[RequestMatcherSpec]]] = None

    def build_matcher(self) -> RequestMatcher:
        if self.matcher is None:
            return NONE
        if isinstance(self.matcher, list):
            return any_of(spec.to_matcher() for spec in self.matcher)
        return self.matcher.to_matcher()

    def build_settings(self) -> PolicySettings:
        return PolicySettings()

    def to_fragment(self) -> PolicyFragment:
        return PolicyFragment(
            name=self.name,
            parent_name=self.parent,
            request_matcher=self.build_matcher(),
            enabled=self.enabled,
            abstract=False,
            settings=self.build_settings(),
        )


class CsrfFragmentSpec(PolicyFragmentSpec):
    """A CSRF fragment: the requests it matches are protected when enabled."""


def _optional_set(values: Optional[list[str]]) -> Optional[set[str]]:
    return set(values) if values is not None else None


def _cors_methods(values: Optional[list[str]]) -> Optional[set[str]]:
    """Allowed CORS methods; ``"*"`` is kept as the any-method wildcard."""
    if values is None:
        return None
    if "*" in values:
        return {"*"}
    return set(parse_methods(values) or ())


class CorsFragmentSpec(PolicyFragmentSpec):
    """A CORS fragment.  Unset (``None``) settings are inherited from the parent."""
    abstract: bool = False
    allowed_origins: Optional[list[str]] = None
    allowed_methods: Optional[list[str]] = None
    allowed_headers: Optional[list[str]] = None
    exposed_headers: Optional[list[str]] = None
    allow_credentials: Optional[bool] = None
    max_age: Optional[int] = Field(default=None, ge=0)

    def build_settings(self) -> CorsSettings:
        return CorsSettings(
            allowed_origins=_optional_set(self.allowed_origins),
            allowed_methods=_cors_methods(self.allowed_methods),
            allowed_headers=_optional_set(self.allowed_headers),
            exposed_headers=_optional_set(self.exposed_headers),
            allow_credentials=self.allow_credentials,
            max_age=self.max_age,
        )

    def to_fragment(self) -> PolicyFragment:
        fragment = super().to_fragment()
        fragment.abstract = self.abstract
        return fragment


def parse_fragments(entries: Iterable[dict[str, Any]], kind: PolicyKind) -> list[PolicyFragment]:
    """Validate raw entries and turn them into fragments.

    Raises:
        pydantic.ValidationError: an entry has the wrong shape.
        MatcherSpecError: a matcher specification is malformed.
    """
    model = CorsFragmentSpec if kind is PolicyKind.CORS else CsrfFragmentSpec
    return [model.model_validate(entry).to_fragment() for entry in entries]


# ---------------------------------------------------------------------------
# API Request / Response schemas
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str
    version: str
    cors_enabled: bool
    csrf_enabled: bool

