"""Policy fragments, their compilation into trees and the live aggregated configuration."""

from websecurity.core.policy.aggregation import AggregatedConfiguration
from websecurity.core.policy.compiler import (
    DISABLED_TREE,
    CompiledNode,
    CompiledPolicyTree,
    compile_fragments,
)
from websecurity.core.policy.fragments import (
    DEFAULT_CORS_ALLOW_CREDENTIALS,
    DEFAULT_CORS_ALLOWED_METHODS,
    DEFAULT_CORS_MAX_AGE,
    ROOT_NAME,
    CorsSettings,
    PolicyFragment,
    PolicySettings,
)
from websecurity.core.policy.source import (
    DeclarativePolicySource,
    InMemoryPolicySource,
    PolicySource,
    PolicySourceEvent,
)

__all__ = [
    "AggregatedConfiguration",
    "CompiledNode",
    "CompiledPolicyTree",
    "CorsSettings",
    "DEFAULT_CORS_ALLOW_CREDENTIALS",
    "DEFAULT_CORS_ALLOWED_METHODS",
    "DEFAULT_CORS_MAX_AGE",
    "DISABLED_TREE",
    "DeclarativePolicySource",
    "InMemoryPolicySource",
    "PolicyFragment",
    "PolicySettings",
    "PolicySource",
    "PolicySourceEvent",
    "ROOT_NAME",
    "compile_fragments",
]
