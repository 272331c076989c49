"""
k3se/models/validator.py

Validates parsed YAML documents against pydantic-based types, converting
pydantic's ValidationError into the k3se error the caller asks for.
"""

from typing import Any, Callable, List, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

from k3se.errors import K3seError

T = TypeVar("T")


def _describe(err: ValidationError) -> List[str]:
    """Flatten a ValidationError into 'a.b.c: message' lines."""
    return [
        ".".join(str(loc) for loc in item["loc"]) + ": " + item["msg"]
        for item in err.errors()
    ]


def validate_type(
    obj: Any,
    expected_type: Type[T],
    error: Callable[[List[str]], K3seError],
) -> T:
    """
    Validates that a given Python object conforms to the expected pydantic-based type.

    Args:
        obj (Any): The object to validate, usually the result of yaml.safe_load.
        expected_type (Type[T]): The type (pydantic or otherwise) to validate against.
        error: Builds the exception to raise from the list of problems found.

    Returns:
        T: The validated object, cast to the expected type.

    Raises:
        K3seError: Whatever `error` builds, chained to the ValidationError.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise error(_describe(e)) from e
