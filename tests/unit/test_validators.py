"""
Tests for core.validators module.
"""
import pytest

from core.exceptions import ValidationError
from core.validators import validate_entity, validate_resource_id


class TestValidateEntity:
    """Tests for validate_entity()."""

    @pytest.mark.parametrize("value,expected", [
        ("campaign", "campaign"),
        ("Flow", "flow"),
        (" CAMPAIGN ", "campaign"),
    ])
    def test_valid(self, value, expected):
        assert validate_entity(value) == expected

    def test_unknown(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_entity("segment")
        assert exc_info.value.field == "entity"
        assert "Must be one of: campaign, flow" in str(exc_info.value)

    def test_empty(self):
        with pytest.raises(ValidationError, match="required"):
            validate_entity("")


class TestValidateResourceId:
    """Tests for validate_resource_id()."""

    def test_valid(self):
        assert validate_resource_id("01HXYZ_abc-9") == "01HXYZ_abc-9"
        assert validate_resource_id(" C1 ") == "C1"

    @pytest.mark.parametrize("value", ["", "a,b", 'x")', "a b", "x" * 65])
    def test_invalid(self, value):
        with pytest.raises(ValidationError, match="Invalid id format"):
            validate_resource_id(value, field="campaign_id")

    def test_none(self):
        with pytest.raises(ValidationError, match="Id is required"):
            validate_resource_id(None)
