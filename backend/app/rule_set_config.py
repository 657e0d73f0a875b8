"""Rule-set and snapshot files for offline evaluation and seeding.

A rule-set file is YAML (JSON works too, since it is valid YAML):

    name: Demo EMA Cross
    summary: Detects recent EMA(9) cross above EMA(20) for long entries.
    thresholds:
      green_if_score_gte: 0.8
      yellow_if_score_between: [0.5, 0.8]
    tags:
      - tag_key: ema_cross_recent
        name: EMA Cross Recent
        severity: ENTRY
        rule:
          when:
            all_of:
              - cross: {a: "EMA(9)", b: "EMA(20)", direction: up, lookback_candles: 3}
          score: {base: 1, decay_per_candle_since_cross: 0.2}

Tag rules are kept as raw JSON here; they are parsed per tag at evaluation
time so that one malformed rule does not reject the whole file.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from core.models.coach import RuleSet, TagDefinition, TagSeverity

logger = logging.getLogger(__name__)


class TagEntry(BaseModel):
    """A single tag entry in a rule-set file."""

    tag_key: str = Field(alias="tagKey")
    name: str | None = None
    severity: TagSeverity = TagSeverity.INFO
    category: str | None = None
    description: str | None = None
    rule: Any = None

    model_config = {"populate_by_name": True}

    def to_tag_definition(self) -> TagDefinition:
        return TagDefinition(
            tag_key=self.tag_key,
            name=self.name or self.tag_key,
            severity=self.severity,
            category=self.category,
            description=self.description,
            rule=self.rule,
        )


class RuleSetFile(BaseModel):
    """Top-level rule-set file."""

    name: str
    owner_id: str | None = None
    summary: str | None = None
    thresholds: dict[str, Any] | None = None
    tags: list[TagEntry] = []

    @model_validator(mode="after")
    def _validate(self):
        keys = [t.tag_key for t in self.tags]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"duplicate tag_key values: {', '.join(duplicates)}")
        return self

    def to_rule_set(self) -> RuleSet:
        return RuleSet(
            owner_id=self.owner_id,
            name=self.name,
            summary=self.summary,
            thresholds=self.thresholds,
            tags=[t.to_tag_definition() for t in self.tags],
        )


def _read(path: Path) -> Any:
    with open(path) as f:
        return yaml.safe_load(f)


def load_rule_set(path: Path) -> RuleSet:
    """Load a rule set from a YAML or JSON file.

    Raises FileNotFoundError, yaml.YAMLError or pydantic.ValidationError.
    """
    raw = _read(path) or {}
    config = RuleSetFile.model_validate(raw)
    rule_set = config.to_rule_set()
    logger.info(
        "Loaded rule set %s from %s: %d tags",
        rule_set.name,
        path,
        len(rule_set.tags),
    )
    return rule_set


def load_snapshot_data(path: Path) -> tuple[Any, Any]:
    """Load `(features, payload)` from a snapshot file.

    A file with a top-level `features` key may also carry a `payload`; any
    other document is taken as the features object itself.
    """
    raw = _read(path)
    if isinstance(raw, dict) and "features" in raw:
        return raw.get("features"), raw.get("payload")
    return raw, None
