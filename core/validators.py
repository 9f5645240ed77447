"""
Input validation functions for API parameters.

All validators raise ValidationError on invalid input.
"""

import re

from core.exceptions import ValidationError


# Report views that can be keyed by owner type
VALID_ENTITIES = ("campaign", "flow")

# Klaviyo resource ids are short opaque tokens; ids are interpolated
# into filter expressions, so quotes and commas are never accepted
RESOURCE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_entity(entity: str) -> str:
    """
    Validate the owner type of a conversions view.

    Args:
        entity: "campaign" or "flow" (case-insensitive)

    Returns:
        Normalized entity name

    Raises:
        ValidationError: If entity is not a known owner type
    """
    if not entity or not isinstance(entity, str):
        raise ValidationError("entity", "Entity is required", entity)

    value = entity.strip().lower()
    if value not in VALID_ENTITIES:
        raise ValidationError(
            "entity",
            f"Must be one of: {', '.join(VALID_ENTITIES)}",
            entity
        )
    return value


def validate_resource_id(value: str, field: str = "id") -> str:
    """
    Validate a Klaviyo resource id taken from the URL.

    Raises:
        ValidationError: If the id is empty or contains unsafe characters
    """
    if value is None:
        raise ValidationError(field, "Id is required", value)

    cleaned = str(value).strip()
    if not RESOURCE_ID_PATTERN.match(cleaned):
        raise ValidationError(field, "Invalid id format", value)
    return cleaned
