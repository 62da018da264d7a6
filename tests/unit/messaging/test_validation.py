"""Unit tests for message schema validation."""
from typing import Optional

import pytest
from pydantic import BaseModel

from resilient_mq.exceptions import SchemaNotFoundError
from resilient_mq.validation import MessageValidator


class OrderCreated(BaseModel):
    order_id: int
    amount: float
    note: Optional[str] = None


def test_validate_with_model_schema():
    """Should accept data matching a registered model."""
    validator = MessageValidator().register_schema("order.created", OrderCreated)

    assert validator.validate({"order_id": 1, "amount": 9.5}, "order.created") is True
    assert validator.get_errors() == {}


def test_validate_collects_field_errors():
    """Should return False and expose errors keyed by field."""
    validator = MessageValidator().register_schema("order.created", OrderCreated)

    assert validator.validate({"order_id": "abc"}, "order.created") is False

    errors = validator.get_errors()
    assert set(errors) == {"order_id", "amount"}
    assert all(isinstance(message, str) for messages in errors.values() for message in messages)


def test_validate_with_mapping_schema():
    """Should build a schema from field types and defaults."""
    validator = MessageValidator()
    validator.register_schema("user.registered", {"email": str, "age": (int, 0)})

    assert validator.validate({"email": "a@b.c"}, "user.registered")
    assert not validator.validate({"age": 3}, "user.registered")
    assert "email" in validator.get_errors()


def test_errors_reset_between_validations():
    """Should only report errors of the last validation."""
    validator = MessageValidator().register_schema("order.created", OrderCreated)
    validator.validate({}, "order.created")

    validator.validate({"order_id": 2, "amount": 1}, "order.created")

    assert validator.get_errors() == {}


def test_unknown_schema_raises():
    """Should raise when validating against an unregistered schema."""
    validator = MessageValidator()

    assert not validator.has_schema("missing")
    with pytest.raises(SchemaNotFoundError):
        validator.validate({}, "missing")
