"""Scan profiles loaded from JSON."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from .decoder import ResyncPolicy
from .elf import FlagMatch


logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised for malformed scan profiles."""


@dataclass(frozen=True)
class ScanConfig:
    """Policies shared by the scanners and the segment check.

    ``resync`` decides what a scan does on bytes the decoder rejects (unset
    means each caller picks its own default, see :meth:`policy`),
    ``flag_match`` how segment protection flags are compared,
    ``int3_padding`` whether ``int3`` counts as inter-function padding and
    ``span_segments`` whether a range may cross adjacent segments.
    """

    resync: Optional[ResyncPolicy] = None
    flag_match: FlagMatch = FlagMatch.SUBSET
    int3_padding: bool = False
    span_segments: bool = False

    def policy(self, default: ResyncPolicy = ResyncPolicy.STOP) -> ResyncPolicy:
        return default if self.resync is None else self.resync

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "ScanConfig":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")

        config = cls()
        if "resync" in payload:
            config = replace(config, resync=_enum(ResyncPolicy, payload["resync"], "resync"))
        if "flag_match" in payload:
            config = replace(config, flag_match=_enum(FlagMatch, payload["flag_match"], "flag_match"))
        for key in ("int3_padding", "span_segments"):
            if key in payload:
                value = payload[key]
                if not isinstance(value, bool):
                    raise ConfigError(f"{key} must be a boolean, got {value!r}")
                config = replace(config, **{key: value})
        return config

    @classmethod
    def load(cls, path: Path) -> "ScanConfig":
        try:
            payload = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"{path}: invalid JSON ({exc})") from exc
        if not isinstance(payload, dict):
            raise ConfigError(f"{path}: expected a JSON object")
        config = cls.from_json(payload)
        logger.debug("loaded scan profile %s: %s", path, config)
        return config

    def to_json(self) -> dict:
        payload = {
            "flag_match": self.flag_match.value,
            "int3_padding": self.int3_padding,
            "span_segments": self.span_segments,
        }
        if self.resync is not None:
            payload["resync"] = self.resync.value
        return payload


def _enum(enum_type, value: Any, key: str):
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_type)
        raise ConfigError(f"{key} must be one of {choices}, got {value!r}") from None
