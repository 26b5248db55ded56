"""
CardStream Content Loader

Loads a content bundle (cards, formulas, lookups) from a dict or a JSON
file, validates it with the pydantic schema and builds the typed card
variants. Inactive cards are dropped; the rest are ordered by
display_order.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union
import json
import logging

from pydantic import ValidationError

from cardstream.cards.models import AnyCardConfig, build_card_config
from cardstream.cards.schema import ContentBundleSchema
from cardstream.errors import CardConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class ContentBundle:
    """Validated content ready to start sessions with."""
    cards: List[AnyCardConfig] = field(default_factory=list)
    formulas: List[Dict[str, Any]] = field(default_factory=list)
    lookups: List[Dict[str, Any]] = field(default_factory=list)

    def card_ids(self) -> List[str]:
        return [c.id for c in self.cards]


def load_bundle(data: Dict[str, Any]) -> ContentBundle:
    """
    Validate and build a content bundle.

    Raises:
        CardConfigurationError: schema violation or unusable card template
    """
    try:
        schema = ContentBundleSchema.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise CardConfigurationError(
            f"Invalid content bundle: {first.get('msg', str(e))}",
            source="content_loader",
            path=location or None,
        )

    templates = [c for c in schema.cards if c.is_active]
    skipped = len(schema.cards) - len(templates)
    if skipped:
        logger.info(f"Skipped {skipped} inactive card(s)")

    cards = [build_card_config(t.to_raw()) for t in sorted(templates, key=lambda t: t.display_order)]
    bundle = ContentBundle(
        cards=cards,
        formulas=[f.model_dump(exclude_none=True) for f in schema.formulas],
        lookups=list(schema.lookups),
    )
    logger.info(
        f"Loaded content bundle: {len(bundle.cards)} cards, "
        f"{len(bundle.formulas)} formulas, {len(bundle.lookups)} lookups"
    )
    return bundle


def load_bundle_file(path: Union[str, Path]) -> ContentBundle:
    """Load a content bundle from a JSON file."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CardConfigurationError(
            f"Cannot read content bundle {path}: {e}",
            source="content_loader",
            path=str(path),
        )
    return load_bundle(data)
