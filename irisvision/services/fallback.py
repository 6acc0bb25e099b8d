"""Offline analysis used when the remote service cannot deliver."""
from __future__ import annotations

import copy
from typing import Any

from .image_packager import EncodedPayload

_TEMPLATES: tuple[dict[str, Any], ...] = (
    {
        "pattern": {
            "name": "European Tapestry",
            "description": (
                "The captivating blend of cool blue-grey with a warm central ring "
                "often hints at a diverse European heritage."
            ),
            "metrics": {
                "prevalence": "92%",
                "regions": "Northern Europe, Central Europe",
                "genetic": "T13",
            },
        },
        "sensitivity": {
            "name": "Sunlight Sensitivity",
            "description": (
                "Lighter-colored eyes contain less protective pigment against the "
                "sun's rays. Stylish sunglasses keep them happy on bright days."
            ),
        },
        "uniquePatterns": [
            "Radiant Furrows",
            "Concentric Ring of Fire",
            "Defined Limbal Ring",
        ],
        "rarity": {
            "title": "A Rare Gem",
            "description": (
                "Blue-grey with pronounced central heterochromia and an amber fleck "
                "sets this iris apart from more common variations."
            ),
            "percentage": 85,
        },
        "additionalInsights": [
            {
                "icon": "🧬",
                "title": "The Reflective Sage",
                "description": (
                    "This eye color is often associated with calm, depth and a "
                    "thoughtful, artistic spirit."
                ),
            },
            {
                "icon": "👁️",
                "title": "Central Heterochromia & Amber Fleck",
                "description": (
                    "A golden-amber ring encircles the pupil and contrasts with the "
                    "cool blue-grey of the iris."
                ),
            },
        ],
        "summary": (
            "A European Tapestry pattern with rare central heterochromia and amber "
            "flecks makes these eyes truly one-of-a-kind."
        ),
    },
    {
        "pattern": {
            "name": "Classic Iris Pattern",
            "description": (
                "Natural patterns with unique characteristics that make this iris "
                "distinctly yours."
            ),
            "metrics": {"prevalence": "15%", "regions": "Global", "genetic": "Natural"},
        },
        "sensitivity": {
            "name": "Normal Light Sensitivity",
            "description": (
                "Natural protection against light while maintaining excellent "
                "visual clarity."
            ),
        },
        "uniquePatterns": ["Natural Fibers", "Iris Crypts", "Color Variations"],
        "rarity": {
            "title": "Unique Beauty",
            "description": "Every iris is unique, and this one has its own special characteristics.",
            "percentage": 80,
        },
        "additionalInsights": [
            {
                "icon": "👁️",
                "title": "Natural Beauty",
                "description": (
                    "The natural complexity that makes each person's eyes unique."
                ),
            }
        ],
        "summary": "Beautiful natural patterns make these eyes uniquely yours.",
    },
)


def generate_fallback(payload: EncodedPayload) -> dict[str, Any]:
    """Return the offline analysis for ``payload``; same image, same answer."""
    index = int(payload.digest[:8], 16) % len(_TEMPLATES)
    result = copy.deepcopy(_TEMPLATES[index])
    result["offline"] = True
    return result


__all__ = ["generate_fallback"]
