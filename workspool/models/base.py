"""Base model for all workspool Pydantic models.

This module provides a base model class that enforces consistent serialization
behavior across all workspool models.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict


class WorkspoolBaseModel(BaseModel):
    """Base model class for all workspool Pydantic models.

    Serialisation always goes through JSON mode so models can be stored in
    the index and written to logs without custom encoders.
    """

    model_config = ConfigDict(
        extra="allow",
        str_strip_whitespace=True,
        use_enum_values=True,
        validate_assignment=True,
    )

    def to_dict_full(self) -> dict[str, Any]:
        """Convert model to dictionary including all fields (even unset ones).

        Returns:
            Dictionary representation including all fields
        """
        return self.model_dump(by_alias=True, exclude_unset=False, mode="json")
