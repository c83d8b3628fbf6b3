"""
Fixed trait taxonomies for personality instruments.

A personality result always lists every trait of its instrument, in this
order, so profile charts receive the same shape for every participant.
"""
from typing import Dict, List, NamedTuple

from psikotes.models.models import TestCategory


class TraitDefinition(NamedTuple):
    name: str
    key: str
    description: str


TRAIT_TAXONOMIES: Dict[TestCategory, List[TraitDefinition]] = {
    TestCategory.DISC: [
        TraitDefinition(
            "Dominance",
            "dominance",
            "Assertive, results-oriented, strong-willed, and forceful",
        ),
        TraitDefinition(
            "Influence",
            "influence",
            "Enthusiastic, optimistic, open, trusting, and energetic",
        ),
        TraitDefinition(
            "Steadiness",
            "steadiness",
            "Even-tempered, accommodating, patient, humble, and tactful",
        ),
        TraitDefinition(
            "Compliance",
            "compliance",
            "Private, analytical, logical, critical, and reserved",
        ),
    ],
    TestCategory.MBTI: [
        TraitDefinition(
            "Extraversion",
            "extraversion",
            "Outgoing, energetic, assertive, and sociable",
        ),
        TraitDefinition(
            "Sensing", "sensing", "Practical, realistic, detailed, and factual"
        ),
        TraitDefinition(
            "Thinking", "thinking", "Logical, analytical, objective, and critical"
        ),
        TraitDefinition(
            "Judging", "judging", "Organized, decisive, scheduled, and structured"
        ),
    ],
    TestCategory.BIG_FIVE: [
        TraitDefinition(
            "Openness",
            "openness",
            "Creative, curious, open to new experiences and ideas",
        ),
        TraitDefinition(
            "Conscientiousness",
            "conscientiousness",
            "Organized, responsible, dependable, and achievement-oriented",
        ),
        TraitDefinition(
            "Extraversion",
            "extraversion",
            "Sociable, assertive, energetic, and outgoing",
        ),
        TraitDefinition(
            "Agreeableness",
            "agreeableness",
            "Cooperative, trusting, helpful, and good-natured",
        ),
        TraitDefinition(
            "Neuroticism",
            "neuroticism",
            "Anxious, emotionally reactive, and prone to negative emotions",
        ),
    ],
    TestCategory.EPPS: [
        TraitDefinition(
            "Achievement",
            "achievement",
            "Driven to accomplish difficult tasks and excel",
        ),
        TraitDefinition(
            "Deference",
            "deference",
            "Respectful to authority and willing to follow others",
        ),
        TraitDefinition(
            "Order", "order", "Organized, neat, and values structure and planning"
        ),
        TraitDefinition(
            "Exhibition",
            "exhibition",
            "Enjoys being the center of attention and impressing others",
        ),
        TraitDefinition(
            "Autonomy", "autonomy", "Independent, self-reliant, and values freedom"
        ),
        TraitDefinition(
            "Affiliation",
            "affiliation",
            "Enjoys close relationships and being part of groups",
        ),
        TraitDefinition(
            "Intraception",
            "intraception",
            "Analytical, introspective, and interested in understanding motives",
        ),
        TraitDefinition(
            "Succorance",
            "succorance",
            "Seeks help and support from others when needed",
        ),
        TraitDefinition(
            "Dominance",
            "dominance",
            "Assertive, influential, and enjoys leading others",
        ),
        TraitDefinition(
            "Abasement",
            "abasement",
            "Self-critical, accepts blame, and feels inferior at times",
        ),
        TraitDefinition(
            "Nurturance",
            "nurturance",
            "Caring, helpful, and enjoys taking care of others",
        ),
        TraitDefinition(
            "Change", "change", "Enjoys variety, novelty, and new experiences"
        ),
        TraitDefinition(
            "Endurance",
            "endurance",
            "Persistent, determined, and works hard to completion",
        ),
        TraitDefinition(
            "Heterosexuality",
            "heterosexuality",
            "Interested in and attracted to the opposite sex",
        ),
        TraitDefinition(
            "Aggression",
            "aggression",
            "Competitive, argumentative, and easily angered",
        ),
    ],
}


def taxonomy_for(category: TestCategory) -> List[TraitDefinition]:
    """Return the fixed trait list for a category (empty when it has none)."""
    return TRAIT_TAXONOMIES.get(category, [])
