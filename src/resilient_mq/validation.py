"""Schema validation of message payloads using Pydantic models."""
import logging
from typing import Any, Dict, List, Mapping, Type, Union

from pydantic import BaseModel, ValidationError, create_model

from resilient_mq.exceptions import SchemaNotFoundError

logger = logging.getLogger(__name__)

SchemaDefinition = Union[Type[BaseModel], Mapping[str, Any]]


class MessageValidator:
    """Validates payloads against named schemas.

    A schema is either a Pydantic model class or a mapping of field name to
    type (required) or ``(type, default)`` (optional), from which a model is
    built.

    Example:
        validator = MessageValidator()
        validator.register_schema("order.created", {"order_id": int, "note": (str, None)})
        if not validator.validate(payload, "order.created"):
            print(validator.get_errors())
    """

    def __init__(self):
        self._schemas: Dict[str, Type[BaseModel]] = {}
        self._errors: Dict[str, List[str]] = {}

    def register_schema(self, name: str, schema: SchemaDefinition) -> "MessageValidator":
        """Register or replace a schema under ``name``."""
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            model = schema
        else:
            fields = {
                field_name: spec if isinstance(spec, tuple) else (spec, ...)
                for field_name, spec in schema.items()
            }
            model = create_model(f"{name.title().replace('.', '')}Schema", **fields)

        self._schemas[name] = model
        logger.debug(f"Registered validation schema '{name}'")
        return self

    def has_schema(self, name: str) -> bool:
        """Check if a schema is registered."""
        return name in self._schemas

    def validate(self, data: Any, schema_name: str) -> bool:
        """Validate data against a registered schema.

        Args:
            data: Payload to validate
            schema_name: Registered schema name

        Returns:
            True if valid; otherwise False with errors available from
            ``get_errors()``

        Raises:
            SchemaNotFoundError: If no schema is registered under the name
        """
        model = self._schemas.get(schema_name)
        if model is None:
            raise SchemaNotFoundError(schema_name)

        self._errors = {}
        try:
            model.model_validate(data)
        except ValidationError as e:
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"]) or "__root__"
                self._errors.setdefault(location, []).append(error["msg"])
            return False
        return True

    def get_errors(self) -> Dict[str, List[str]]:
        """Field errors of the last failed validation."""
        return {field_name: list(messages) for field_name, messages in self._errors.items()}
