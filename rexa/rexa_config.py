"""
Runner configuration, loaded from a YAML file and/or the environment.
"""
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Tuple

import yaml

from rexa.rexa_resolver import FALLBACK_TIERS


@dataclass
class RexaConfig:
    default_domain: str = "DEFAULT"
    registry_url: Optional[str] = None
    remote_url: Optional[str] = None
    autoload: Dict[str, str] = field(default_factory=dict)
    fallback_order: Tuple[str, ...] = FALLBACK_TIERS
    dispatch_timeout: Optional[float] = None
    interpolation_pattern: str = "handlebars"
    yield_interval: int = 64
    debug: bool = False

    def __post_init__(self):
        self.fallback_order = tuple(str(t).lower() for t in self.fallback_order)
        if sorted(self.fallback_order) != sorted(FALLBACK_TIERS):
            raise ValueError(f"fallback_order must be a permutation of {FALLBACK_TIERS}, not {self.fallback_order}")
        self.autoload = {str(k).upper(): str(v) for k, v in (self.autoload or {}).items()}
        if self.dispatch_timeout is not None:
            self.dispatch_timeout = float(self.dispatch_timeout)
        self.yield_interval = int(self.yield_interval)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RexaConfig':
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        # Accept kebab-case keys as written in YAML files
        normalized = {str(k).replace("-", "_"): v for k, v in data.items()}
        unknown = sorted(set(normalized) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**normalized)

    @classmethod
    def from_file(cls, path: str) -> 'RexaConfig':
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'RexaConfig':
        """`REXA_CONFIG` names a YAML file; individual variables override it."""
        environ = os.environ if environ is None else environ
        path = environ.get("REXA_CONFIG")
        config = cls.from_file(path) if path else cls()
        if environ.get("REXA_REGISTRY_URL"):
            config.registry_url = environ["REXA_REGISTRY_URL"]
        if environ.get("REXA_REMOTE_URL"):
            config.remote_url = environ["REXA_REMOTE_URL"]
        if environ.get("REXA_DEBUG", "").strip().lower() in ("1", "true", "yes", "on"):
            config.debug = True
        return config
