"""Request models for the Pulse API."""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..exceptions import ValidationException


class AllOrganizationsScope(BaseModel):
    """Run alerts for every organization."""

    scope: Literal["all"] = "all"


class ActiveOrganizationScope(BaseModel):
    """Run alerts for the caller's active organization only."""

    scope: Literal["org"]


ManualTriggerRequest = Annotated[
    Union[AllOrganizationsScope, ActiveOrganizationScope],
    Field(discriminator="scope"),
]

_manual_trigger_adapter = TypeAdapter(ManualTriggerRequest)


def parse_manual_trigger(
    payload: Optional[Any],
) -> Union[AllOrganizationsScope, ActiveOrganizationScope]:
    """
    Parse the optional body of a manual trigger.

    An empty body means ``{"scope": "all"}``.

    Raises:
        ValidationException: If the body is not one of the known scopes
    """
    if payload is None or payload == {}:
        return AllOrganizationsScope()

    try:
        return _manual_trigger_adapter.validate_python(payload)
    except ValidationError as e:
        field_errors = {
            ".".join(str(loc) for loc in error["loc"]) or "body": error["msg"]
            for error in e.errors()
        }
        raise ValidationException("Invalid trigger scope", field_errors=field_errors) from e
