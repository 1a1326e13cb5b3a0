import polars as pl
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from src.shared.config import WorldConfig
from src.shared.errors import ValidationError
from src.shared.resources import EffectTag, ResourceKind, TAG_RESOURCE, zero_resources

@dataclass
class LawEffects:
    """
    Numeric outcome of a territory's enacted national laws.
    This is all the tick engine ever learns about a law.
    """
    production_bonus: Dict[ResourceKind, float] = field(default_factory=zero_resources)
    rural_bias: float = 0.0
    urban_bias: float = 0.0
    law_count: int = 0
    # law id -> reason, for laws left out because their data is broken
    rejected: Dict[str, str] = field(default_factory=dict)

    @property
    def popularity_bias(self) -> float:
        return self.rural_bias + self.urban_bias


def parse_tags(raw: Iterable[str]) -> List[EffectTag]:
    """
    Converts stored tag values into EffectTags.
    Unknown values are a data error: tags are fixed when the law is drafted.
    """
    tags = []
    for value in raw or []:
        value = value.strip().lower()
        if not value:
            continue
        try:
            tags.append(EffectTag(value))
        except ValueError:
            raise ValidationError(f"Unknown law effect tag '{value}'") from None
    return tags


def _affected_resources(tags: Iterable[EffectTag]) -> set:
    return {TAG_RESOURCE[t] for t in tags if t in TAG_RESOURCE}


def aggregate_laws(laws: pl.DataFrame, config: WorldConfig) -> Dict[str, LawEffects]:
    """
    Reduces enacted national laws to per-territory bonuses and biases.

    Logic:
        - Each law boosts a resource by `law_tag_bonus` once if any of its
          positive tags maps to that resource; negative tags cost the same.
        - Rural/urban popularity contribute `popularity * law_popularity_weight`
          to the stability bias.
        - A law with an unknown tag is left out entirely and listed in its
          territory's `rejected`; other laws and territories are unaffected.
    """
    effects: Dict[str, LawEffects] = {}
    if laws.is_empty():
        return effects

    enacted = laws.filter(
        (pl.col("legal_level") == "national") & (pl.col("status") == "enacted")
    )

    for law in enacted.iter_rows(named=True):
        territory_id = law["territory_id"]
        agg = effects.setdefault(territory_id, LawEffects())
        try:
            positive = _affected_resources(parse_tags(law.get("positive_effects") or []))
            negative = _affected_resources(parse_tags(law.get("negative_effects") or []))
        except ValidationError as e:
            print(f"[Laws] Skipping law {law.get('id')} of {territory_id}: {e}")
            agg.rejected[str(law.get("id"))] = str(e)
            continue

        agg.law_count += 1
        for kind in positive:
            agg.production_bonus[kind] += config.law_tag_bonus
        for kind in negative:
            agg.production_bonus[kind] -= config.law_tag_bonus

        agg.rural_bias += (law.get("rural_popularity") or 0) * config.law_popularity_weight
        agg.urban_bias += (law.get("urban_popularity") or 0) * config.law_popularity_weight

    return effects
